"""
Constituent matching against the remote CRM.

Strategy:
- Email first: search each candidate address and accept a result only
  after verifying it actually carries that address
- Name fallback: every name-search result must carry one of the
  candidate addresses
- Without any email, the first name-search result is accepted unverified
- Remote search is a loose index, never a unique-key lookup, so an
  unverified hit is treated as no hit

A failed remote call is raised, never reported as "not found": the
caller would otherwise create a duplicate constituent.
"""

from typing import Any, Dict, Iterable, List, Optional, Union

import structlog

from .client import RemoteClient, normalize_items
from .errors import AmbiguousMatchError
from .helpers import email_candidates, emails_equivalent
from .models import ConstituentMatch


def _addresses_of(records: Iterable[Dict[str, Any]]) -> List[str]:
    return [r.get("address") for r in records if isinstance(r, dict) and r.get("address")]


class ConstituentMatcher:
    """
    Find the remote constituent for a name and candidate email addresses.

    Args:
        client: Shared RemoteClient
        max_candidates: Maximum search results verified per search
        strict_name_match: Raise AmbiguousMatchError rather than accept the
            first of several unverified name matches
        logger: Structured logger
    """

    def __init__(
        self,
        client: RemoteClient,
        max_candidates: int = 10,
        strict_name_match: bool = False,
        logger: Any = None,
    ):
        self.client = client
        self.max_candidates = max_candidates
        self.strict_name_match = strict_name_match
        self._logger = logger or structlog.get_logger(__name__)

    @classmethod
    def from_settings(cls, client: RemoteClient, config, **kwargs) -> "ConstituentMatcher":
        return cls(
            client,
            max_candidates=config.matcher_max_candidates,
            strict_name_match=config.matcher_strict_name_match,
            **kwargs
        )

    def find_constituent(
        self,
        name: str,
        emails: Union[str, Iterable[str], None] = None,
    ) -> Optional[ConstituentMatch]:
        """
        Find a confirmed remote constituent.

        Args:
            name: Full name of the local person/organization
            emails: One or more known email addresses

        Returns:
            ConstituentMatch, or None when nothing is confirmed (the caller
            should create the constituent, never blind-update)

        Raises:
            TransportError, RemoteApiError, RateLimitExceeded: a search or
                verification call failed
            AmbiguousMatchError: strict mode and several unverifiable
                name matches
        """
        candidates = email_candidates(emails)
        clean_name = (name or "").replace("%20", " ").strip()
        log = self._logger.bind(name=clean_name, emails=candidates)
        # Email sub-records fetched during this lookup, by constituent id
        fetched: Dict[Any, List[str]] = {}

        for email in candidates:
            match = self._match_by_email(email, fetched, log)
            if match is not None:
                return match

        if clean_name:
            match = self._match_by_name(clean_name, candidates, fetched, log)
            if match is not None:
                return match

        log.info("No matching constituent confirmed")
        return None

    def _match_by_email(self, email: str, fetched: Dict[Any, List[str]], log) -> Optional[ConstituentMatch]:
        response = self.client.get("constituents", {"email": email}, use_cache=False)
        response.raise_for_failure()

        results = response.items[: self.max_candidates]
        for constituent in results:
            if self._has_email(constituent, [email], fetched):
                log.info("Email match confirmed", constituent_id=constituent["id"], email=email)
                return ConstituentMatch(id=constituent["id"], matched_email=email, method="email")

        if results:
            log.info(
                "Email search results rejected by verification",
                email=email,
                candidates=[c.get("id") for c in results],
            )
        return None

    def _match_by_name(
        self,
        name: str,
        candidates: List[str],
        fetched: Dict[Any, List[str]],
        log,
    ) -> Optional[ConstituentMatch]:
        response = self.client.get("constituents", {"search": name}, use_cache=False)
        response.raise_for_failure()

        results = response.items[: self.max_candidates]
        if not results:
            return None

        if not candidates:
            if self.strict_name_match and len(results) > 1:
                ids = [c.get("id") for c in results]
                log.warning("Ambiguous name match", candidates=ids)
                raise AmbiguousMatchError(
                    f"{len(results)} constituents match name {name!r} and no email "
                    f"is available to tell them apart",
                    candidate_ids=ids,
                )
            first = results[0]
            log.info("Name match accepted without email verification", constituent_id=first["id"])
            return ConstituentMatch(id=first["id"], matched_email=None, method="name")

        for constituent in results:
            for email in candidates:
                if self._has_email(constituent, [email], fetched):
                    log.info(
                        "Name match confirmed by email",
                        constituent_id=constituent["id"],
                        email=email,
                    )
                    return ConstituentMatch(id=constituent["id"], matched_email=email, method="name")

        log.info(
            "Name search results rejected by verification",
            candidates=[c.get("id") for c in results],
        )
        return None

    def _has_email(self, constituent: Dict[str, Any], emails: List[str], fetched: Dict[Any, List[str]]) -> bool:
        """Verify that a search result carries one of ``emails``."""
        addresses = self._email_addresses(constituent, fetched)
        return any(
            emails_equivalent(address, email)
            for address in addresses
            for email in emails
        )

    def _email_addresses(self, constituent: Dict[str, Any], fetched: Dict[Any, List[str]]) -> List[str]:
        """Email addresses of a search result, fetched when not embedded."""
        embedded = constituent.get("email_addresses")
        if isinstance(embedded, list) and embedded:
            return _addresses_of(embedded)

        constituent_id = constituent.get("id")
        if constituent_id in fetched:
            return fetched[constituent_id]

        response = self.client.get(f"constituents/{constituent_id}/email_addresses", use_cache=False)
        response.raise_for_failure()
        addresses = _addresses_of(normalize_items(response.data))
        fetched[constituent_id] = addresses
        return addresses
