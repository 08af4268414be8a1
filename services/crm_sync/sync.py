"""
Sync orchestration for one local entity.

Reads the entity from the attribute store, finds or creates its remote
constituent, links the two, converges contact sub-records and records
purchases (gifts, plus membership renewal and group assignment for
membership products). Relationships between two local entities are
linked through their constituents.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import structlog

from .attributor import PaymentAttributor, classify_item, is_family_slot
from .client import ApiResponse, RemoteClient
from .constituents import ConstituentService, build_core_fields
from .errors import CrmSyncError, PurchaseRecordingError
from .matcher import ConstituentMatcher
from .memberships import MembershipManager
from .models import (
    ContactKind,
    ContactRecord,
    PurchaseCategory,
    PurchaseEvent,
    PurchaseOutcome,
    ReconcileResult,
)
from .payments import PaymentService
from .reconciler import ContactReconciler
from .relationships import GroupMembershipManager, RelationshipManager
from .store import AttributeStore

# Attribute keys on the local side
ATTR_FIRST_NAME = "first_name"
ATTR_LAST_NAME = "last_name"
ATTR_NAME = "name"
ATTR_EMAILS = "emails"
ATTR_PHONE = "phone"
ATTR_ADDRESS = "address"
ATTR_REMOTE_ID = "remote_constituent_id"


@dataclass
class LocalEntity:
    """Local record as read from the attribute store."""
    entity_id: str
    first_name: str = ""
    last_name: str = ""
    emails: List[str] = field(default_factory=list)
    phone: str = ""
    address: Dict[str, Any] = field(default_factory=dict)
    remote_id: Any = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def contact_records(self) -> List[ContactRecord]:
        """At most one record per type: the primary email, the phone, the address."""
        records = []
        if self.emails:
            records.append(ContactRecord.email(self.emails[0]))
        if self.phone:
            records.append(ContactRecord.phone(self.phone))
        if self.address.get("street"):
            records.append(ContactRecord.address(
                self.address.get("street", ""),
                city=self.address.get("city", ""),
                state=self.address.get("state", ""),
                postal_code=self.address.get("postal_code", ""),
                country=self.address.get("country", ""),
            ))
        return records


@dataclass
class SyncOutcome:
    """Result of syncing one entity."""
    entity_id: str
    constituent_id: Any
    method: str
    created: bool = False
    results: Dict[ContactKind, ReconcileResult] = field(default_factory=dict)

    @property
    def actions(self) -> Dict[str, str]:
        return {kind.value: result.action.value for kind, result in self.results.items()}


class ConstituentSync:
    """
    Find-or-create, link and converge one entity at a time.

    Callers serialize syncs per entity id; concurrent syncs for different
    entities are fine.
    """

    def __init__(
        self,
        store: AttributeStore,
        client: RemoteClient,
        matcher: ConstituentMatcher,
        reconciler: ContactReconciler,
        constituents: ConstituentService,
        payments: PaymentService,
        memberships: MembershipManager,
        groups: GroupMembershipManager,
        relationships: RelationshipManager,
        membership_group_ids: Optional[Dict[str, int]] = None,
        family_slot_fund_id: Optional[int] = None,
        logger: Any = None,
    ):
        self.store = store
        self.client = client
        self.matcher = matcher
        self.reconciler = reconciler
        self.constituents = constituents
        self.payments = payments
        self.memberships = memberships
        self.groups = groups
        self.relationships = relationships
        self.membership_group_ids = {
            key.strip().lower(): value for key, value in (membership_group_ids or {}).items()
        }
        self.family_slot_fund_id = family_slot_fund_id
        self._logger = logger or structlog.get_logger(__name__)

    @classmethod
    def from_settings(cls, config, store: AttributeStore, client: Optional[RemoteClient] = None,
                      logger: Any = None) -> "ConstituentSync":
        """Wire every component around one shared client."""
        client = client or RemoteClient(config, logger=logger)
        return cls(
            store=store,
            client=client,
            matcher=ConstituentMatcher.from_settings(client, config, logger=logger),
            reconciler=ContactReconciler(client, logger=logger),
            constituents=ConstituentService(client, logger=logger),
            payments=PaymentService(client, PaymentAttributor(client, config, logger=logger), logger=logger),
            memberships=MembershipManager.from_settings(client, config, logger=logger),
            groups=GroupMembershipManager(client, logger=logger),
            relationships=RelationshipManager(client, logger=logger),
            membership_group_ids=config.membership_group_ids,
            family_slot_fund_id=config.family_slot_fund_id,
            logger=logger,
        )

    def load(self, entity_id: Any) -> LocalEntity:
        get = self.store.get_attribute
        first = get(entity_id, ATTR_FIRST_NAME) or ""
        last = get(entity_id, ATTR_LAST_NAME) or ""
        if not first and not last:
            name = (get(entity_id, ATTR_NAME) or "").strip()
            first, _, last = name.partition(" ")

        address = get(entity_id, ATTR_ADDRESS)
        return LocalEntity(
            entity_id=str(entity_id),
            first_name=first.strip(),
            last_name=last.strip(),
            emails=_as_list(get(entity_id, ATTR_EMAILS)),
            phone=get(entity_id, ATTR_PHONE) or "",
            address=address if isinstance(address, dict) else {},
            remote_id=get(entity_id, ATTR_REMOTE_ID),
        )

    def sync_entity(self, entity_id: Any, full_resync: bool = False) -> SyncOutcome:
        """
        Sync one entity.

        Args:
            entity_id: Local entity id
            full_resync: Replace every contact record instead of converging
                incrementally; use only with the complete current picture

        Raises:
            CrmSyncError subclasses: remote failures, ambiguous matches and
                partial reconciliation failures propagate unchanged
        """
        entity = self.load(entity_id)
        log = self._logger.bind(entity_id=entity.entity_id)

        constituent_id, method = self.resolve_constituent(entity)
        created = method == "created"
        if entity.remote_id != constituent_id:
            self.store.set_attribute(entity.entity_id, ATTR_REMOTE_ID, constituent_id)

        records = entity.contact_records()
        if full_resync and not created:
            results = self.reconciler.resync(constituent_id, records)
        else:
            results = self.reconciler.reconcile_all(constituent_id, records)

        outcome = SyncOutcome(
            entity_id=entity.entity_id,
            constituent_id=constituent_id,
            method=method,
            created=created,
            results=results,
        )
        log.info(
            "Entity synced",
            constituent_id=constituent_id,
            method=method,
            full_resync=full_resync,
            actions=outcome.actions,
        )
        return outcome

    def resolve_constituent(self, entity: LocalEntity):
        """Stored link, else a confirmed match, else a new constituent."""
        if entity.remote_id:
            return entity.remote_id, "stored"

        match = self.matcher.find_constituent(entity.full_name, entity.emails)
        if match is not None:
            return match.id, match.method

        response = self.constituents.create(build_core_fields(entity.first_name, entity.last_name))
        response.raise_for_failure()
        constituent_id = self.constituents.find_id(response)
        if constituent_id is None:
            raise CrmSyncError(f"Constituent created for entity {entity.entity_id} but no id was returned")
        return constituent_id, "created"

    def record_purchase(
        self,
        entity_id: Any,
        event: PurchaseEvent,
        skip_external_ids: Iterable[str] = (),
    ) -> PurchaseOutcome:
        """
        Record an order for an entity, linking the entity first if needed.

        Each payment is posted as a gift first. Membership items then renew
        the constituent's membership (ending the active one) and add the
        group mapped to the new level. Family-slot items are payments only.

        Args:
            entity_id: Local entity id
            event: The order
            skip_external_ids: Payments posted by an earlier pass; pass
                ``error.outcome.posted_ids`` when replaying a failed order

        Returns:
            PurchaseOutcome with every write made

        Raises:
            AttributionError: fund could not be resolved; nothing was written
            PurchaseRecordingError: one or more writes failed; ``outcome``
                holds the status of every payment by external id
        """
        constituent_id = self._remote_id(entity_id)
        skip_external_ids = [str(external_id) for external_id in skip_external_ids]
        log = self._logger.bind(entity_id=str(entity_id), constituent_id=constituent_id, order_id=event.order_id)

        outcome = PurchaseOutcome(constituent_id=constituent_id, order_id=event.order_id)
        outcome.payments = self.payments.record_purchase(constituent_id, event, skip_external_ids=skip_external_ids)

        for item in event.items:
            if classify_item(item) != PurchaseCategory.MEMBERSHIP:
                continue
            if is_family_slot(item, self.family_slot_fund_id):
                log.info("Family slot item, membership unchanged", item=item.name)
                continue
            try:
                self._renew_membership(constituent_id, event, item, outcome, log)
            except CrmSyncError as exc:
                log.error("Membership not renewed", item=item.name, error=str(exc))
                outcome.errors.append(exc)

        if not outcome.success:
            log.error(
                "Purchase partially recorded",
                posted=outcome.posted_ids,
                failed=outcome.failed_ids,
                skipped=skip_external_ids,
                memberships_ok=all(renewal.success for renewal in outcome.memberships),
                groups_ok=all(response.success for response in outcome.groups),
                errors=[str(exc) for exc in outcome.errors],
            )
            raise PurchaseRecordingError(
                f"Order {event.order_id} partially recorded for constituent {constituent_id}: "
                f"failed payments {outcome.failed_ids}",
                outcome,
            )

        log.info(
            "Purchase recorded",
            posted=outcome.posted_ids,
            memberships=len(outcome.memberships),
            groups=len(outcome.groups),
        )
        return outcome

    def _renew_membership(self, constituent_id: Any, event: PurchaseEvent, item, outcome: PurchaseOutcome,
                          log) -> None:
        renewal = self.memberships.renew(
            constituent_id,
            level_id=item.membership_level_id,
            label=item.name,
            start_date=event.order_date,
            note=f"Order {event.order_id}",
        )
        if renewal is None:
            log.warning("Membership level not resolved, membership unchanged", item=item.name)
            return
        outcome.memberships.append(renewal)

        group_id = self.membership_group_ids.get(renewal.level_name.strip().lower())
        if group_id is not None:
            outcome.groups.append(self.groups.add(constituent_id, group_id))

    def link_entities(self, entity_id: Any, related_entity_id: Any, type_name: str) -> ApiResponse:
        """
        Record a relationship (e.g. a family member) between two entities' constituents.

        Either entity is synced first when it has no remote link yet. An
        existing identical relationship is returned rather than duplicated.

        Raises:
            RemoteApiError: unknown relationship type, or the lookup failed
        """
        constituent_id = self._remote_id(entity_id)
        related_id = self._remote_id(related_entity_id)
        response = self.relationships.add(constituent_id, related_id, type_name=type_name)
        response.raise_for_failure()
        return response

    def _remote_id(self, entity_id: Any) -> Any:
        constituent_id = self.store.get_attribute(entity_id, ATTR_REMOTE_ID)
        if constituent_id:
            return constituent_id
        return self.sync_entity(entity_id).constituent_id


def _as_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [item for item in value if item]
