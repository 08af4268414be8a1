"""
Contact sub-record reconciliation.

Converges a constituent's email, phone and address sub-records to at most
one record per type. Each remote write is a separate step with its own
outcome, so a partial failure can be retried step by step.
"""

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

import structlog

from .client import RemoteClient
from .errors import CrmSyncError, PartialReconciliationFailure
from .log_config import log_contact_action
from .models import (
    ContactKind,
    ContactRecord,
    ReconcileAction,
    ReconcileResult,
    ReconcileStep,
)


class ContactReconciler:
    """
    Decide and apply skip/update/add per contact type.

    Incremental ``reconcile`` converges a single new datum into the one
    slot of its type; ``resync`` replaces every record of each provided
    type when the caller holds the complete current picture.
    """

    def __init__(self, client: RemoteClient, logger: Any = None):
        self.client = client
        self._logger = logger or structlog.get_logger(__name__)

    def existing(self, constituent_id: Any, kind: ContactKind) -> List[ContactRecord]:
        """
        Fetch the current sub-records of one type, bypassing the cache.

        Raises:
            TransportError, RemoteApiError, RateLimitExceeded: fetch failed
        """
        response = self.client.get(
            f"constituents/{constituent_id}/{kind.collection}",
            use_cache=False,
        )
        response.raise_for_failure()
        return [ContactRecord.from_remote(kind, item) for item in response.items]

    def plan(self, constituent_id: Any, record: ContactRecord,
             existing: List[ContactRecord]) -> ReconcileResult:
        """
        Compute the steps converging ``existing`` to ``record`` without
        touching the remote side.
        """
        kind = record.kind
        collection = f"constituents/{constituent_id}/{kind.collection}"

        target = _select_target(record, existing)
        result = ReconcileResult(kind=kind, action=ReconcileAction.ADD)

        for other in existing:
            if other is target:
                continue
            result.deleted_ids.append(other.id)
            result.steps.append(ReconcileStep(
                action=ReconcileAction.DELETE,
                kind=kind,
                method="DELETE",
                endpoint=f"{collection}/{other.id}",
                record_id=other.id,
            ))

        if target is None:
            result.steps.append(ReconcileStep(
                action=ReconcileAction.ADD,
                kind=kind,
                method="POST",
                endpoint=collection,
                payload=record.to_payload(),
            ))
            return result

        result.record_id = target.id
        if target.same_value(record) and target.same_attributes(record):
            result.action = ReconcileAction.SKIP
            return result

        result.action = ReconcileAction.UPDATE
        result.steps.append(ReconcileStep(
            action=ReconcileAction.UPDATE,
            kind=kind,
            method="PUT",
            endpoint=f"{collection}/{target.id}",
            payload=record.to_payload(),
            record_id=target.id,
        ))
        return result

    def reconcile(self, constituent_id: Any, record: ContactRecord) -> ReconcileResult:
        """
        Converge one contact type to ``record``.

        Returns:
            ReconcileResult with action skip, update or add

        Raises:
            ValueError: record has no value
            TransportError, RemoteApiError, RateLimitExceeded: fetching the
                existing records failed (nothing was written)
            PartialReconciliationFailure: one or more writes failed
        """
        if not record.value:
            raise ValueError(f"Cannot reconcile an empty {record.kind.value} record")

        existing = self.existing(constituent_id, record.kind)
        result = self.plan(constituent_id, record, existing)

        if not result.steps:
            log_contact_action(self._logger, constituent_id, record.kind.value,
                               ReconcileAction.SKIP.value, record_id=result.record_id)
            return result

        result.steps = [self._execute(constituent_id, step) for step in result.steps]
        self._finish(constituent_id, record.kind, result)
        return result

    def reconcile_all(self, constituent_id: Any,
                      records: Iterable[ContactRecord]) -> Dict[ContactKind, ReconcileResult]:
        """
        Reconcile the first record of each type in ``records``.

        A failure for one type does not stop the other types. A type whose
        existing records cannot be read is reported as a failed FETCH step.

        Raises:
            PartialReconciliationFailure: with the steps of every type, once
                all of them have been attempted
            CrmSyncError: every type failed to read and nothing was written
        """
        results: Dict[ContactKind, ReconcileResult] = {}
        failures: List[PartialReconciliationFailure] = []
        fetch_steps: List[ReconcileStep] = []

        for record in _first_per_kind(records):
            try:
                results[record.kind] = self.reconcile(constituent_id, record)
            except PartialReconciliationFailure as exc:
                failures.append(exc)
            except CrmSyncError as exc:
                fetch_steps.append(self._fetch_failed(constituent_id, record.kind, exc))

        if fetch_steps and not results and not failures:
            raise fetch_steps[0].failure
        if failures or fetch_steps:
            steps = [step for result in results.values() for step in result.steps]
            for failure in failures:
                steps.extend(failure.steps)
            steps.extend(fetch_steps)
            messages = [str(f) for f in failures] + [step.error for step in fetch_steps]
            raise PartialReconciliationFailure("; ".join(messages), constituent_id, steps)
        return results

    def resync(self, constituent_id: Any,
               records: Iterable[ContactRecord]) -> Dict[ContactKind, ReconcileResult]:
        """
        Full resync: delete every existing record of each provided type,
        then add exactly one new record per type.

        The add is not attempted when a delete of the same type failed,
        so a failed pass never leaves two records behind; it is reported
        as a failed step instead. A type whose existing records cannot be
        read is left untouched and reported as a failed FETCH step.

        Raises:
            PartialReconciliationFailure: one or more steps failed
            CrmSyncError: every type failed to read and nothing was written
        """
        results: Dict[ContactKind, ReconcileResult] = {}
        all_steps: List[ReconcileStep] = []
        fetch_failures: List[CrmSyncError] = []
        failed = False

        for record in _first_per_kind(records):
            kind = record.kind
            collection = f"constituents/{constituent_id}/{kind.collection}"
            try:
                existing = self.existing(constituent_id, kind)
            except CrmSyncError as exc:
                fetch_failures.append(exc)
                all_steps.append(self._fetch_failed(constituent_id, kind, exc))
                failed = True
                continue
            result = ReconcileResult(kind=kind, action=ReconcileAction.ADD)

            deletes_ok = True
            for old in existing:
                step = self._execute(constituent_id, ReconcileStep(
                    action=ReconcileAction.DELETE,
                    kind=kind,
                    method="DELETE",
                    endpoint=f"{collection}/{old.id}",
                    record_id=old.id,
                ))
                result.steps.append(step)
                result.deleted_ids.append(old.id)
                deletes_ok = deletes_ok and step.success

            add = ReconcileStep(
                action=ReconcileAction.ADD,
                kind=kind,
                method="POST",
                endpoint=collection,
                payload=record.to_payload(),
            )
            if deletes_ok:
                add = self._execute(constituent_id, add)
                result.record_id = add.record_id
            else:
                add.error = "Not attempted: a preceding delete failed"
                log_contact_action(self._logger, constituent_id, kind.value,
                                   add.action.value, success=False, error=add.error)
            result.steps.append(add)

            self.client.invalidate(f"constituents/{constituent_id}")
            failed = failed or any(not step.success for step in result.steps)
            all_steps.extend(result.steps)
            results[kind] = result

        if fetch_failures and not results:
            raise fetch_failures[0]
        if failed:
            raise PartialReconciliationFailure(
                f"Full resync of constituent {constituent_id} partially failed",
                constituent_id,
                all_steps,
            )
        return results

    def retry_step(self, constituent_id: Any, step: ReconcileStep) -> ReconcileStep:
        """
        Replay one failed step exactly as planned.

        A FETCH step only repeats the read; reconcile its record again to
        converge that type.

        Returns:
            The step with its new outcome
        """
        retried = self._execute(constituent_id, replace(step, success=False, error=None, failure=None))
        self.client.invalidate(f"constituents/{constituent_id}")
        return retried

    def _execute(self, constituent_id: Any, step: ReconcileStep) -> ReconcileStep:
        response = self.client.request(step.endpoint, step.method, step.payload, use_cache=False)

        if response.success:
            record_id = step.record_id
            if step.action is ReconcileAction.ADD:
                record_id = response.record_id
            done = replace(step, success=True, record_id=record_id)
        else:
            done = replace(step, success=False, error=response.error, failure=response.failure)

        log_contact_action(
            self._logger,
            constituent_id,
            step.kind.value,
            step.action.value,
            record_id=done.record_id,
            success=done.success,
            endpoint=step.endpoint,
            error=done.error,
        )
        return done

    def _fetch_failed(self, constituent_id: Any, kind: ContactKind, exc: CrmSyncError) -> ReconcileStep:
        step = ReconcileStep(
            action=ReconcileAction.FETCH,
            kind=kind,
            method="GET",
            endpoint=f"constituents/{constituent_id}/{kind.collection}",
            success=False,
            error=str(exc),
            failure=exc,
        )
        log_contact_action(self._logger, constituent_id, kind.value, step.action.value,
                           success=False, endpoint=step.endpoint, error=step.error)
        return step

    def _finish(self, constituent_id: Any, kind: ContactKind, result: ReconcileResult) -> None:
        self.client.invalidate(f"constituents/{constituent_id}")

        for step in result.steps:
            if step.action is ReconcileAction.ADD and step.success:
                result.record_id = step.record_id

        failed = [step for step in result.steps if not step.success]
        if failed:
            raise PartialReconciliationFailure(
                f"{len(failed)} of {len(result.steps)} {kind.value} operations failed "
                f"for constituent {constituent_id}",
                constituent_id,
                result.steps,
            )


def _select_target(record: ContactRecord, existing: List[ContactRecord]) -> Optional[ContactRecord]:
    """Pick the single record to keep: exact value match, else preferred, else first."""
    for candidate in existing:
        if candidate.same_value(record):
            return candidate
    for candidate in existing:
        if candidate.is_preferred:
            return candidate
    return existing[0] if existing else None


def _first_per_kind(records: Iterable[ContactRecord]) -> List[ContactRecord]:
    seen = set()
    selected = []
    for record in records:
        if record is None or not record.value or record.kind in seen:
            continue
        seen.add(record.kind)
        selected.append(record)
    return selected
