"""
Exception taxonomy for the CRM sync service.

Ordinary remote call failures are never raised by the client; they are
carried inside an ApiResponse as one of these exceptions so that higher
layers can decide to propagate them with ``raise_for_failure()``.
"""

from typing import Any, Dict, List, Optional


class CrmSyncError(Exception):
    """Base exception for CRM sync errors."""

    retryable = False


class ConfigurationError(CrmSyncError):
    """Base URL or API key missing. Fatal, never retried."""
    pass


class TransportError(CrmSyncError):
    """Network failure or timeout talking to the remote API."""

    retryable = True


class RemoteApiError(CrmSyncError):
    """Remote API answered with a non-2xx status or an undecodable body."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


class RateLimitExceeded(CrmSyncError):
    """Rate budget still exhausted after the bounded wait."""

    retryable = True

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class AmbiguousMatchError(CrmSyncError):
    """Several remote constituents could match and none can be verified."""

    def __init__(self, message: str, candidate_ids: Optional[List[Any]] = None):
        super().__init__(message)
        self.candidate_ids = list(candidate_ids or [])


class PartialReconciliationFailure(CrmSyncError):
    """
    A contact sub-record operation failed after zero or more others succeeded.

    ``steps`` lists every attempted step in order, each with its own
    success flag, so the caller can retry only the failed ones.
    """

    def __init__(self, message: str, constituent_id: Any, steps: List[Any]):
        super().__init__(message)
        self.constituent_id = constituent_id
        self.steps = list(steps)

    @property
    def failed_steps(self) -> List[Any]:
        return [step for step in self.steps if not step.success]

    @property
    def succeeded_steps(self) -> List[Any]:
        return [step for step in self.steps if step.success]

    @property
    def retryable(self) -> bool:
        return all(
            step.failure is None or step.failure.retryable
            for step in self.failed_steps
        )


class AttributionError(CrmSyncError):
    """Payment could not be attributed to a fund."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = dict(context or {})


class PurchaseRecordingError(CrmSyncError):
    """
    Some writes for an order failed after zero or more others succeeded.

    ``outcome`` is the PurchaseOutcome with every payment response keyed
    by external id; replay the order skipping ``outcome.posted_ids``.
    """

    def __init__(self, message: str, outcome: Any):
        super().__init__(message)
        self.outcome = outcome

    @property
    def retryable(self) -> bool:
        failures = [
            response.failure
            for response in self.outcome.payments.values()
            if not response.success
        ]
        failures.extend(self.outcome.errors)
        return all(failure is None or failure.retryable for failure in failures)
