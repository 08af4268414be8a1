"""
Payment attribution.

Maps a purchase to the fund, campaign, gift category, gift type and
payment type identifiers of the remote taxonomy. Every field is resolved
by an ordered chain of resolvers; the first one returning a value wins.

Only the fund is mandatory: a payment without a fund corrupts financial
reporting, so an unresolvable fund raises AttributionError. Every other
field degrades to a generic fallback.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import structlog

from .client import RemoteClient
from .errors import AttributionError
from .models import PaymentRecord, PurchaseCategory, PurchaseEvent, PurchaseItem

Resolver = Callable[[], Optional[int]]

TAXONOMY_COLLECTIONS = {
    "funds": "funds.json",
    "campaigns": "campaigns.json",
    "gift_categories": "gift_categories.json",
    "gift_types": "gift_types.json",
    "payment_types": "payment_types.json",
}

# Campaign names per category, primary name first
CAMPAIGN_NAMES = {
    PurchaseCategory.MEMBERSHIP: ["Membership Fees", "Memberships"],
    PurchaseCategory.LANGUAGE_CLASS: ["Language Class", "Language Classes"],
    PurchaseCategory.EVENTS: ["Events", "WACU Programming"],
    PurchaseCategory.OTHER: [],
}

GIFT_CATEGORY_NAMES = {
    PurchaseCategory.MEMBERSHIP: ["Memberships"],
    PurchaseCategory.LANGUAGE_CLASS: ["Language Classes"],
    PurchaseCategory.EVENTS: ["Event Fee"],
    PurchaseCategory.OTHER: ["Donation"],
}

FALLBACK_GIFT_CATEGORY = "Misc."

FUND_NAMES = {
    PurchaseCategory.MEMBERSHIP: ["Membership"],
}

# Local payment method -> remote payment type names, preferred first
PAYMENT_TYPE_NAMES = {
    "stripe": ["Credit Card", "Stripe"],
    "square": ["Credit Card"],
    "credit-card": ["Credit Card"],
    "paypal": ["PayPal"],
    "ppcp-gateway": ["PayPal"],
    "bacs": ["Bank Transfer", "ACH"],
    "cheque": ["Check"],
    "check": ["Check"],
    "cod": ["Cash"],
    "cash": ["Cash"],
}
DEFAULT_PAYMENT_TYPE_NAMES = ["Credit Card"]

CATEGORY_LABELS = {
    PurchaseCategory.MEMBERSHIP: "Membership",
    PurchaseCategory.LANGUAGE_CLASS: "Language Class",
    PurchaseCategory.EVENTS: "Event",
    PurchaseCategory.OTHER: "Purchase",
}


def first_resolved(resolvers: Iterable[Resolver]) -> Optional[int]:
    """
    Run resolvers in order and return the first non-empty result.

    Examples:
        >>> first_resolved([lambda: None, lambda: 7, lambda: 9])
        7
        >>> first_resolved([]) is None
        True
    """
    for resolver in resolvers:
        value = resolver()
        if value is not None and value != "":
            return value
    return None


def classify_item(item: Optional[PurchaseItem]) -> PurchaseCategory:
    """
    Classify a purchased item by its category taxonomy terms.

    Examples:
        >>> classify_item(PurchaseItem(name="Gold", categories=["Memberships"]))
        <PurchaseCategory.MEMBERSHIP: 'membership'>
        >>> classify_item(PurchaseItem(name="Mug"))
        <PurchaseCategory.OTHER: 'other'>
    """
    if item is None:
        return PurchaseCategory.OTHER

    terms = [str(term).strip().lower().replace("_", "-") for term in item.categories]
    if any("membership" in term for term in terms):
        return PurchaseCategory.MEMBERSHIP
    if any("language" in term or term in ("class", "classes") for term in terms):
        return PurchaseCategory.LANGUAGE_CLASS
    if any("event" in term for term in terms):
        return PurchaseCategory.EVENTS
    return PurchaseCategory.OTHER


def is_family_slot(item: Optional[PurchaseItem], family_slot_fund_id: Optional[int]) -> bool:
    """
    Whether the item is a family-slot product (carries the family-slot fund marker).

    Examples:
        >>> is_family_slot(PurchaseItem(name="Extra member", fund_marker=7), 7)
        True
        >>> is_family_slot(PurchaseItem(name="Gold"), 7)
        False
    """
    return (
        item is not None
        and item.fund_marker is not None
        and family_slot_fund_id is not None
        and int(item.fund_marker) == int(family_slot_fund_id)
    )


def _money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


@dataclass
class TaxonomySnapshot:
    """Remote reference lists fetched once per attribution pass."""
    funds: List[Dict[str, Any]] = field(default_factory=list)
    campaigns: List[Dict[str, Any]] = field(default_factory=list)
    gift_categories: List[Dict[str, Any]] = field(default_factory=list)
    gift_types: List[Dict[str, Any]] = field(default_factory=list)
    payment_types: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def fetch(cls, client: RemoteClient) -> "TaxonomySnapshot":
        """
        Load every list through the client cache (taxonomy TTL).

        Raises:
            TransportError, RemoteApiError, RateLimitExceeded: a lookup failed
        """
        lists = {}
        for attr, endpoint in TAXONOMY_COLLECTIONS.items():
            response = client.get(endpoint)
            response.raise_for_failure()
            lists[attr] = response.items
        return cls(**lists)

    def find_id(self, collection: str, names: Sequence[str]) -> Optional[int]:
        """Id of the first entry whose name or display name matches, trying names in order."""
        entries = getattr(self, collection)
        for name in names:
            wanted = name.strip().lower()
            for entry in entries:
                labels = (entry.get("name"), entry.get("display_name"))
                if any(isinstance(label, str) and label.strip().lower() == wanted for label in labels):
                    return entry.get("id")
        return None

    def first_id(self, collection: str) -> Optional[int]:
        entries = getattr(self, collection)
        return entries[0].get("id") if entries else None


class PaymentAttributor:
    """
    Resolve PaymentRecords for purchase events.

    Args:
        client: Shared RemoteClient
        config: CrmSyncSettings (fund, campaign and gift type options)
        logger: Structured logger
    """

    def __init__(self, client: RemoteClient, config, logger: Any = None):
        self.client = client
        self.config = config
        self._logger = logger or structlog.get_logger(__name__)

    def snapshot(self) -> TaxonomySnapshot:
        return TaxonomySnapshot.fetch(self.client)

    def attribute_payment(
        self,
        event: PurchaseEvent,
        item: Optional[PurchaseItem] = None,
        external_id: Optional[str] = None,
        taxonomy: Optional[TaxonomySnapshot] = None,
        amount: Any = None,
    ) -> PaymentRecord:
        """
        Attribute one payment.

        Args:
            event: The purchase
            item: Item paid for; defaults to the first item of the order
            external_id: Idempotency key; defaults to the order id
            taxonomy: Snapshot shared across a multi-item pass
            amount: Amount paid; defaults to the order total

        Raises:
            AttributionError: no fund could be resolved
        """
        if taxonomy is None:
            taxonomy = self.snapshot()
        if item is None and event.items:
            item = event.items[0]

        category = classify_item(item)
        external_id = external_id or str(event.order_id)
        amount = _money(event.total if amount is None else amount)
        log = self._logger.bind(order_id=event.order_id, external_id=external_id, category=category.value)

        record = PaymentRecord(
            external_id=external_id,
            amount=amount,
            received_date=event.order_date,
            fund_id=self.resolve_fund(item, category, taxonomy, log),
            campaign_id=self.resolve_campaign(category, taxonomy, log),
            category_id=self.resolve_gift_category(category, taxonomy, log),
            gift_type_id=self.resolve_gift_type(taxonomy, log),
            payment_type_id=self.resolve_payment_type(event.payment_method, taxonomy, log),
            note=self.build_note(event, item, category),
            category=category,
        )
        log.info(
            "Payment attributed",
            fund_id=record.fund_id,
            campaign_id=record.campaign_id,
            gift_category_id=record.category_id,
            payment_type_id=record.payment_type_id,
            amount=str(record.amount),
        )
        return record

    def attribute_order(self, event: PurchaseEvent) -> List[PaymentRecord]:
        """
        Attribute a whole order with a single taxonomy fetch.

        Multi-item orders yield one payment per item, keyed
        ``<order_id>-<n>``; otherwise the order is one payment.
        """
        taxonomy = self.snapshot()
        if len(event.items) <= 1:
            return [self.attribute_payment(event, taxonomy=taxonomy)]

        return [
            self.attribute_payment(event, item, f"{event.order_id}-{n}", taxonomy, amount=item.total)
            for n, item in enumerate(event.items, start=1)
        ]

    def resolve_fund(self, item: Optional[PurchaseItem], category: PurchaseCategory,
                     taxonomy: TaxonomySnapshot, log=None) -> int:
        """
        Fund chain: family-slot marker, item fund, category fund, category
        fund by name, configured general fund, general fund by name.

        Raises:
            AttributionError: every resolver came up empty
        """
        log = log or self._logger
        config = self.config

        def family_slot():
            if is_family_slot(item, config.family_slot_fund_id):
                return config.family_slot_fund_id
            return None

        def item_fund():
            return item.fund_id if item is not None else None

        def category_fund():
            return {
                PurchaseCategory.MEMBERSHIP: config.membership_fund_id,
                PurchaseCategory.LANGUAGE_CLASS: config.language_class_fund_id,
                PurchaseCategory.EVENTS: config.events_fund_id,
            }.get(category)

        def category_fund_by_name():
            return taxonomy.find_id("funds", FUND_NAMES.get(category, []))

        def general_fund():
            return config.general_fund_id

        def general_fund_by_name():
            return taxonomy.find_id("funds", [config.general_fund_name])

        fund_id = first_resolved([
            family_slot,
            item_fund,
            category_fund,
            category_fund_by_name,
            general_fund,
            general_fund_by_name,
        ])
        if fund_id is None:
            log.error("Fund could not be resolved", item=item.name if item else None)
            raise AttributionError(
                "No fund could be resolved for the payment",
                context={"category": category.value, "item": item.name if item else None},
            )
        return fund_id

    def resolve_campaign(self, category: PurchaseCategory, taxonomy: TaxonomySnapshot,
                         log=None) -> Optional[int]:
        """Configured campaign id, then campaign names, then the general campaign."""
        log = log or self._logger
        config = self.config
        configured = {
            PurchaseCategory.MEMBERSHIP: config.membership_campaign_id,
            PurchaseCategory.LANGUAGE_CLASS: config.language_class_campaign_id,
            PurchaseCategory.EVENTS: config.events_campaign_id,
        }

        campaign_id = first_resolved([
            lambda: configured.get(category),
            lambda: taxonomy.find_id("campaigns", CAMPAIGN_NAMES[category]),
            lambda: config.general_campaign_id,
        ])
        if campaign_id is None:
            log.warning("No campaign resolved", names=CAMPAIGN_NAMES[category])
        return campaign_id

    def resolve_gift_category(self, category: PurchaseCategory, taxonomy: TaxonomySnapshot,
                              log=None) -> Optional[int]:
        log = log or self._logger
        names = GIFT_CATEGORY_NAMES[category]
        preferred = taxonomy.find_id("gift_categories", names)
        if preferred is not None:
            return preferred

        log.info("Gift category not found, using fallback", names=names, fallback=FALLBACK_GIFT_CATEGORY)
        return taxonomy.find_id("gift_categories", [FALLBACK_GIFT_CATEGORY])

    def resolve_gift_type(self, taxonomy: TaxonomySnapshot, log=None) -> Optional[int]:
        log = log or self._logger
        gift_type_id = first_resolved([
            lambda: taxonomy.find_id("gift_types", [self.config.gift_type_name]),
            lambda: taxonomy.find_id("gift_types", ["Gift"]),
            lambda: taxonomy.first_id("gift_types"),
        ])
        if gift_type_id is None:
            log.warning("No gift type available")
        return gift_type_id

    def resolve_payment_type(self, payment_method: str, taxonomy: TaxonomySnapshot,
                             log=None) -> Optional[int]:
        """Map the payment method through the fixed table, else the first remote type."""
        log = log or self._logger
        method = (payment_method or "").strip().lower()
        names = PAYMENT_TYPE_NAMES.get(method, DEFAULT_PAYMENT_TYPE_NAMES)

        mapped = taxonomy.find_id("payment_types", names)
        if mapped is not None:
            return mapped

        fallback = taxonomy.first_id("payment_types")
        if fallback is None:
            log.warning("No payment types available", payment_method=method)
        else:
            log.info("Payment type not found, using first available",
                     payment_method=method, names=names, payment_type_id=fallback)
        return fallback

    def build_note(self, event: PurchaseEvent, item: Optional[PurchaseItem],
                   category: PurchaseCategory) -> str:
        """
        Human-readable description of the payment.

        Examples:
            "Membership: 1 x Gold Membership (Order #1001)"
            "Event: 2 x Gala Ticket (Order #1002). Coupons: SPRING. Discount: 5.00"
        """
        label = CATEGORY_LABELS[category]
        if item is not None:
            note = f"{label}: {item.quantity} x {item.name} (Order #{event.order_id})"
        else:
            note = f"{label} (Order #{event.order_id})"

        extras = []
        if event.coupons:
            extras.append("Coupons: " + ", ".join(event.coupons))
        if event.discount_total and _money(event.discount_total) > 0:
            extras.append(f"Discount: {_money(event.discount_total)}")
        if extras:
            note = note + ". " + ". ".join(extras)
        return note
