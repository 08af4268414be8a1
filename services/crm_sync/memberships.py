"""
Membership management.

Levels resolve deterministically: explicit id first, then the remote
level name, then the configured label mapping. Memberships are created
through the nested collection and updated through the direct
``memberships/{id}`` endpoint.
"""

from dataclasses import replace
from datetime import date
from typing import Any, Dict, List, Optional

import structlog

from .client import ApiResponse, RemoteClient
from .models import MembershipRecord, MembershipRenewal


def add_one_year(start: date) -> date:
    """
    Default membership end date.

    Examples:
        >>> add_one_year(date(2024, 2, 29))
        datetime.date(2025, 2, 28)
    """
    try:
        return start.replace(year=start.year + 1)
    except ValueError:
        return start.replace(year=start.year + 1, day=28)


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _same_level(left: Any, right: Any) -> bool:
    return left is not None and right is not None and str(left) == str(right)


def membership_from_remote(data: Dict[str, Any]) -> MembershipRecord:
    return MembershipRecord(
        level_id=data.get("membership_level_id"),
        level_name=data.get("membership_level_name") or "",
        start_date=_parse_date(data.get("date_start")),
        end_date=_parse_date(data.get("finish_date")),
        note=data.get("note") or "",
        id=data.get("id"),
    )


class MembershipManager:
    """Resolve levels and manage a constituent's memberships."""

    def __init__(self, client: RemoteClient, level_ids: Optional[Dict[str, int]] = None, logger: Any = None):
        self.client = client
        self.level_ids = {key.strip().lower(): value for key, value in (level_ids or {}).items()}
        self._logger = logger or structlog.get_logger(__name__)

    @classmethod
    def from_settings(cls, client: RemoteClient, config, **kwargs) -> "MembershipManager":
        return cls(client, level_ids=config.membership_level_ids, **kwargs)

    def levels(self) -> List[Dict[str, Any]]:
        """
        Remote membership levels (taxonomy TTL).

        Raises:
            TransportError, RemoteApiError, RateLimitExceeded: lookup failed
        """
        response = self.client.get("membership_levels")
        response.raise_for_failure()
        return response.items

    def resolve_level(self, level_id: Optional[int] = None, label: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Resolve a membership level.

        Args:
            level_id: Explicit remote level id
            label: Local membership-type label

        Returns:
            ``{"id": ..., "name": ...}`` or None when nothing resolves
        """
        levels = self.levels()
        by_id = {level.get("id"): level for level in levels}

        if level_id is not None:
            level = by_id.get(level_id)
            name = level.get("name") if level else (label or "")
            return {"id": level_id, "name": name}

        if not label:
            return None

        wanted = label.strip().lower()
        for level in levels:
            if str(level.get("name") or "").strip().lower() == wanted:
                return {"id": level.get("id"), "name": level.get("name")}

        mapped = self.level_ids.get(wanted)
        if mapped is not None:
            level = by_id.get(mapped)
            return {"id": mapped, "name": level.get("name") if level else label}

        self._logger.warning("Membership level not resolved", label=label)
        return None

    def list(self, constituent_id: Any, use_cache: bool = True) -> List[MembershipRecord]:
        response = self.client.get(f"constituents/{constituent_id}/memberships", use_cache=use_cache)
        response.raise_for_failure()
        return [membership_from_remote(item) for item in response.items]

    def add(self, constituent_id: Any, record: MembershipRecord) -> ApiResponse:
        """Create a membership; a missing end date defaults to one year after the start."""
        if record.end_date is None:
            record.end_date = add_one_year(record.start_date)

        response = self.client.post(f"constituents/{constituent_id}/memberships", record.to_payload())
        self.client.invalidate(f"constituents/{constituent_id}")
        self._log("added", constituent_id, response, record.id or response.record_id, record.level_name)
        return response

    def update(self, constituent_id: Any, membership_id: Any, record: MembershipRecord) -> ApiResponse:
        """Update through the direct endpoint; the nested form does not accept updates."""
        if record.end_date is None:
            record.end_date = add_one_year(record.start_date)

        response = self.client.put(f"memberships/{membership_id}", record.to_payload())
        self.client.invalidate(f"constituents/{constituent_id}")
        self.client.invalidate(f"memberships/{membership_id}")
        self._log("updated", constituent_id, response, membership_id, record.level_name)
        return response

    def deactivate(self, constituent_id: Any, membership_id: Any,
                   end_date: Optional[date] = None, note: str = "") -> ApiResponse:
        """Soft-deactivate a membership by setting its finish date."""
        payload: Dict[str, Any] = {"finish_date": (end_date or date.today()).isoformat()}
        if note:
            payload["note"] = note

        response = self.client.put(f"memberships/{membership_id}", payload)
        self.client.invalidate(f"constituents/{constituent_id}")
        self.client.invalidate(f"memberships/{membership_id}")
        self._log("deactivated", constituent_id, response, membership_id)
        return response

    def active(self, constituent_id: Any, today: Optional[date] = None) -> List[MembershipRecord]:
        """Memberships with no finish date or one on/after ``today`` (always read fresh)."""
        today = today or date.today()
        return [
            membership for membership in self.list(constituent_id, use_cache=False)
            if membership.end_date is None or membership.end_date >= today
        ]

    def deactivate_active(self, constituent_id: Any, today: Optional[date] = None,
                          note: Optional[str] = None,
                          memberships: Optional[List[MembershipRecord]] = None) -> List[ApiResponse]:
        """
        End every active membership today.

        The full record is sent back with the new finish date, which is
        never earlier than the membership's start date. A failed update is
        logged and the remaining memberships are still processed.

        Args:
            constituent_id: Remote constituent id
            today: Deactivation date
            note: Note written on each ended membership
            memberships: Active memberships already fetched by the caller

        Returns:
            One response per membership touched
        """
        today = today or date.today()
        note = note if note is not None else f"Membership ended by renewal on {today.isoformat()}"
        if memberships is None:
            memberships = self.active(constituent_id, today)

        responses = []
        for membership in memberships:
            if membership.start_date is None:
                responses.append(self.deactivate(constituent_id, membership.id, today, note))
                continue
            ended = replace(membership, end_date=max(today, membership.start_date), note=note)
            responses.append(self.update(constituent_id, membership.id, ended))

        if responses:
            self._logger.info(
                "Active memberships deactivated",
                constituent_id=constituent_id,
                count=len(responses),
                failed=sum(1 for response in responses if not response.success),
            )
        return responses

    def renew(
        self,
        constituent_id: Any,
        level_id: Optional[int] = None,
        label: Optional[str] = None,
        start_date: Optional[date] = None,
        note: str = "",
    ) -> Optional[MembershipRenewal]:
        """
        Replace the active membership with a new one at the resolved level.

        Active memberships are ended before the new one is added, so a
        constituent never holds two active memberships. Nothing is written
        when the level does not resolve, or when an active membership at
        the same level already starts on ``start_date`` (a replayed order).

        Returns:
            MembershipRenewal, or None when the level is unresolved
        """
        level = self.resolve_level(level_id=level_id, label=label)
        if level is None:
            return None

        start = start_date or date.today()
        renewal = MembershipRenewal(level_id=level["id"], level_name=level["name"] or "")
        active = self.active(constituent_id, start)
        for membership in active:
            if _same_level(membership.level_id, level["id"]) and membership.start_date == start:
                self._logger.info(
                    "Membership already current",
                    constituent_id=constituent_id,
                    membership_id=membership.id,
                    level=renewal.level_name,
                )
                renewal.already_current = True
                return renewal

        renewal.deactivated = self.deactivate_active(constituent_id, today=start, memberships=active)
        renewal.added = self.add(constituent_id, MembershipRecord(
            level_id=level["id"],
            level_name=level["name"] or "",
            start_date=start,
            note=note,
        ))
        return renewal

    def _log(self, action: str, constituent_id: Any, response: ApiResponse,
             membership_id: Any = None, level_name: str = None) -> None:
        context = {
            "constituent_id": constituent_id,
            "membership_id": membership_id,
            "level": level_name,
        }
        if response.success:
            self._logger.info(f"Membership {action}", **context)
        else:
            self._logger.error(
                f"Membership not {action}",
                status_code=response.http_status,
                error=response.error,
                **context
            )
