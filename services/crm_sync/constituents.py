"""
Core constituent records: flat scalar fields only.

Contact sub-records are never embedded in these payloads; they are
converged separately by the ContactReconciler.
"""

from typing import Any, Dict, Optional

import structlog

from .client import ApiResponse, RemoteClient

SCALAR_TYPES = (str, int, float, bool, type(None))


def _check_flat(fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        if not isinstance(value, SCALAR_TYPES):
            raise ValueError(
                f"Constituent field {key!r} must be a scalar, got {type(value).__name__}"
            )


def build_core_fields(first_name: str, last_name: str, **extra) -> Dict[str, Any]:
    """
    Build the flat payload for creating or updating a person.

    Examples:
        >>> build_core_fields("Alice", "Ng", prefix="Dr.")["full_name"]
        'Alice Ng'
    """
    first = (first_name or "").strip()
    last = (last_name or "").strip()
    fields: Dict[str, Any] = {
        "first_name": first,
        "last_name": last,
        "full_name": " ".join(part for part in (first, last) if part),
        "is_org": False,
    }
    fields.update(extra)
    _check_flat(fields)
    return fields


class ConstituentService:
    """Get, create and update core constituent records."""

    def __init__(self, client: RemoteClient, logger: Any = None):
        self.client = client
        self._logger = logger or structlog.get_logger(__name__)

    def get(self, constituent_id: Any, use_cache: bool = True) -> ApiResponse:
        return self.client.get(f"constituents/{constituent_id}", use_cache=use_cache)

    def create(self, fields: Dict[str, Any]) -> ApiResponse:
        """
        Create a constituent.

        Raises:
            ValueError: a field value is not a scalar
        """
        _check_flat(fields)
        response = self.client.post("constituents", fields)
        if response.success:
            self._logger.info("Constituent created", constituent_id=response.record_id)
        else:
            self._logger.error(
                "Constituent creation failed",
                status_code=response.http_status,
                error=response.error,
            )
        return response

    def update(self, constituent_id: Any, fields: Dict[str, Any]) -> ApiResponse:
        """
        Update core fields and drop cached reads of the constituent.

        Raises:
            ValueError: a field value is not a scalar
        """
        _check_flat(fields)
        response = self.client.put(f"constituents/{constituent_id}", fields)
        self.client.invalidate(f"constituents/{constituent_id}")
        if response.success:
            self._logger.info("Constituent updated", constituent_id=constituent_id)
        else:
            self._logger.error(
                "Constituent update failed",
                constituent_id=constituent_id,
                status_code=response.http_status,
                error=response.error,
            )
        return response

    def find_id(self, response: ApiResponse) -> Optional[Any]:
        """Id from a create response (single object or items list)."""
        if response.record_id is not None:
            return response.record_id
        items = response.items
        return items[0].get("id") if items else None
