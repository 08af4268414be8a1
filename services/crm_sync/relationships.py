"""
Constituent relationships and group memberships.
"""

from typing import Any, Dict, List, Optional

import structlog

from .client import ApiResponse, RemoteClient
from .errors import RemoteApiError


def _same_id(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    return str(left) == str(right)


class RelationshipManager:
    """Links between two constituents (parent/child, spouse, ...)."""

    def __init__(self, client: RemoteClient, logger: Any = None):
        self.client = client
        self._logger = logger or structlog.get_logger(__name__)

    def relationship_types(self) -> List[Dict[str, Any]]:
        """
        Remote relationship types (taxonomy TTL).

        Raises:
            TransportError, RemoteApiError, RateLimitExceeded: lookup failed
        """
        response = self.client.get("relationship_types")
        response.raise_for_failure()
        return response.items

    def relationship_type_id(self, name: str) -> Optional[int]:
        wanted = (name or "").strip().lower()
        for relationship_type in self.relationship_types():
            if str(relationship_type.get("name") or "").strip().lower() == wanted:
                return relationship_type.get("id")
        return None

    def list(self, constituent_id: Any, use_cache: bool = True) -> List[Dict[str, Any]]:
        response = self.client.get(
            f"constituents/{constituent_id}/constituent_relationships.json",
            use_cache=use_cache,
        )
        response.raise_for_failure()
        return response.items

    def add(
        self,
        constituent_id: Any,
        related_id: Any,
        type_name: Optional[str] = None,
        type_id: Optional[int] = None,
    ) -> ApiResponse:
        """
        Link ``related_id`` to ``constituent_id``.

        An existing link to the same constituent with the same type is
        returned unchanged instead of being created twice.

        Raises:
            ValueError: neither type_name nor type_id given
            RemoteApiError: type_name is not a remote relationship type
        """
        if type_id is None:
            if not type_name:
                raise ValueError("type_name or type_id is required")
            type_id = self.relationship_type_id(type_name)
            if type_id is None:
                raise RemoteApiError(f"Unknown relationship type: {type_name}", 404)

        for existing in self.list(constituent_id, use_cache=False):
            if _same_id(existing.get("related_constituent_id"), related_id) \
                    and _same_id(existing.get("relationship_type_id"), type_id):
                self._logger.info(
                    "Relationship already exists",
                    constituent_id=constituent_id,
                    related_id=related_id,
                    relationship_id=existing.get("id"),
                )
                return ApiResponse.ok(200, existing)

        response = self.client.post(
            f"constituents/{constituent_id}/constituent_relationships.json",
            {"related_constituent_id": related_id, "relationship_type_id": type_id},
        )
        self.client.invalidate(f"constituents/{constituent_id}")
        if response.success:
            self._logger.info(
                "Relationship added",
                constituent_id=constituent_id,
                related_id=related_id,
                relationship_id=response.record_id,
            )
        else:
            self._logger.error(
                "Relationship not added",
                constituent_id=constituent_id,
                related_id=related_id,
                error=response.error,
            )
        return response

    def remove(self, relationship_id: Any, constituent_id: Any = None) -> ApiResponse:
        response = self.client.delete(f"constituent_relationships/{relationship_id}.json")
        if constituent_id is not None:
            self.client.invalidate(f"constituents/{constituent_id}")
        if not response.success:
            self._logger.error(
                "Relationship not removed",
                relationship_id=relationship_id,
                error=response.error,
            )
        return response


class GroupMembershipManager:
    """
    Constituent group memberships.

    Membership checks always bypass the cache: two additions in quick
    succession would otherwise both see the stale list and double-add.
    """

    def __init__(self, client: RemoteClient, logger: Any = None):
        self.client = client
        self._logger = logger or structlog.get_logger(__name__)

    def list(self, constituent_id: Any, use_cache: bool = True) -> List[Dict[str, Any]]:
        response = self.client.get(f"constituents/{constituent_id}/group_memberships", use_cache=use_cache)
        response.raise_for_failure()
        return response.items

    def find(self, constituent_id: Any, group_id: Any) -> Optional[Dict[str, Any]]:
        for membership in self.list(constituent_id, use_cache=False):
            if _same_id(membership.get("group_id"), group_id):
                return membership
        return None

    def is_in_group(self, constituent_id: Any, group_id: Any) -> bool:
        return self.find(constituent_id, group_id) is not None

    def add(self, constituent_id: Any, group_id: int) -> ApiResponse:
        existing = self.find(constituent_id, group_id)
        if existing is not None:
            self._logger.info(
                "Already in group",
                constituent_id=constituent_id,
                group_id=group_id,
                group_membership_id=existing.get("id"),
            )
            return ApiResponse.ok(200, existing)

        response = self.client.post(f"constituents/{constituent_id}/group_memberships", {"group_id": group_id})
        self.client.invalidate(f"constituents/{constituent_id}")
        if response.success:
            self._logger.info(
                "Group membership added",
                constituent_id=constituent_id,
                group_id=group_id,
                group_membership_id=response.record_id,
            )
        else:
            self._logger.error(
                "Group membership not added",
                constituent_id=constituent_id,
                group_id=group_id,
                error=response.error,
            )
        return response

    def remove(self, group_membership_id: Any, constituent_id: Any = None) -> ApiResponse:
        response = self.client.delete(f"group_memberships/{group_membership_id}")
        if constituent_id is not None:
            self.client.invalidate(f"constituents/{constituent_id}")
        if not response.success:
            self._logger.error(
                "Group membership not removed",
                group_membership_id=group_membership_id,
                error=response.error,
            )
        return response

    def remove_by_group_id(self, constituent_id: Any, group_id: Any) -> ApiResponse:
        """Remove by group id, looking up the membership id first."""
        existing = self.find(constituent_id, group_id)
        if existing is None or existing.get("id") is None:
            self._logger.warning("Group membership not found", constituent_id=constituent_id, group_id=group_id)
            return ApiResponse.fail(RemoteApiError("Group membership not found", 404), http_status=404)
        return self.remove(existing["id"], constituent_id)
