"""
Data model for constituents, contact sub-records, memberships and payments.

Remote payload field names live here so that the rest of the service works
with typed records.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .helpers import (
    addresses_equal,
    emails_equivalent,
    normalize_email,
    phones_equal,
)


class ContactKind(str, Enum):
    """Contact sub-record types and their remote collection names."""
    EMAIL = "email"
    PHONE = "phone"
    ADDRESS = "address"

    @property
    def collection(self) -> str:
        return _COLLECTIONS[self]

    @property
    def type_id_field(self) -> str:
        return _TYPE_ID_FIELDS[self]

    @property
    def type_name_field(self) -> str:
        return _TYPE_NAME_FIELDS[self]

    @property
    def value_field(self) -> str:
        return _VALUE_FIELDS[self]


_COLLECTIONS = {
    ContactKind.EMAIL: "email_addresses",
    ContactKind.PHONE: "phone_numbers",
    ContactKind.ADDRESS: "street_addresses",
}

_TYPE_ID_FIELDS = {
    ContactKind.EMAIL: "email_address_type_id",
    ContactKind.PHONE: "phone_number_type_id",
    ContactKind.ADDRESS: "street_address_type_id",
}

_TYPE_NAME_FIELDS = {
    ContactKind.EMAIL: "email_type_name",
    ContactKind.PHONE: "phone_type_name",
    ContactKind.ADDRESS: "street_type_name",
}

_VALUE_FIELDS = {
    ContactKind.EMAIL: "address",
    ContactKind.PHONE: "number",
    ContactKind.ADDRESS: "street",
}


@dataclass
class ContactRecord:
    """
    One email, phone or address sub-record.

    ``value`` is the address for emails, the number for phones and the
    street line for addresses; the remaining address parts have their own
    fields. ``id`` is assigned by the remote side.
    """
    kind: ContactKind
    value: str
    is_preferred: bool = True
    type_id: int = 1
    type_name: str = "Home"
    id: Any = None
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""

    @classmethod
    def email(cls, address: str, **kwargs) -> "ContactRecord":
        return cls(ContactKind.EMAIL, normalize_email(address), **kwargs)

    @classmethod
    def phone(cls, number: str, **kwargs) -> "ContactRecord":
        return cls(ContactKind.PHONE, (number or "").strip(), **kwargs)

    @classmethod
    def address(cls, street: str, city: str = "", state: str = "",
                postal_code: str = "", country: str = "", **kwargs) -> "ContactRecord":
        return cls(
            ContactKind.ADDRESS, (street or "").strip(),
            city=city or "", state=state or "",
            postal_code=postal_code or "", country=country or "",
            **kwargs
        )

    @classmethod
    def from_remote(cls, kind: ContactKind, data: Dict[str, Any]) -> "ContactRecord":
        """Build a record from a remote sub-record object."""
        return cls(
            kind=kind,
            value=str(data.get(kind.value_field) or ""),
            is_preferred=bool(data.get("is_preferred", False)),
            type_id=data.get(kind.type_id_field) or 1,
            type_name=data.get(kind.type_name_field) or "",
            id=data.get("id"),
            city=data.get("city") or "",
            state=data.get("state") or "",
            postal_code=data.get("postal_code") or "",
            country=data.get("country") or "",
        )

    def same_value(self, other: "ContactRecord") -> bool:
        """Equality of the contact value on normalized forms."""
        if self.kind is not other.kind:
            return False
        if self.kind is ContactKind.EMAIL:
            return emails_equivalent(self.value, other.value)
        if self.kind is ContactKind.PHONE:
            return phones_equal(self.value, other.value)
        return addresses_equal(self.address_parts(), other.address_parts())

    def same_attributes(self, other: "ContactRecord") -> bool:
        """Equality of the mutable attributes (type tag and preferred flag)."""
        return (
            int(self.type_id or 0) == int(other.type_id or 0)
            and bool(self.is_preferred) == bool(other.is_preferred)
        )

    def address_parts(self) -> Dict[str, str]:
        return {"street": self.value, "city": self.city, "postal_code": self.postal_code}

    def to_payload(self) -> Dict[str, Any]:
        """Remote JSON body for creating or updating this record."""
        payload: Dict[str, Any] = {
            self.kind.value_field: self.value,
            self.kind.type_id_field: self.type_id,
            self.kind.type_name_field: self.type_name,
            "is_preferred": self.is_preferred,
            "not_current": False,
        }
        if self.kind is ContactKind.ADDRESS:
            payload.update({
                "city": self.city,
                "state": self.state,
                "postal_code": self.postal_code,
                "country": self.country,
                "seasonal": False,
            })
        return payload


class ReconcileAction(str, Enum):
    SKIP = "skip"
    UPDATE = "update"
    ADD = "add"
    DELETE = "delete"
    FETCH = "fetch"


@dataclass
class ReconcileStep:
    """
    One remote call issued during reconciliation.

    Carries everything needed to replay it: method, endpoint and payload.
    A FETCH step records a failed read of the existing records of its type.
    """
    action: ReconcileAction
    kind: ContactKind
    method: str
    endpoint: str
    payload: Optional[Dict[str, Any]] = None
    record_id: Any = None
    success: bool = False
    error: Optional[str] = None
    failure: Any = None


@dataclass
class ReconcileResult:
    """Outcome of reconciling one contact type for one constituent."""
    kind: ContactKind
    action: ReconcileAction
    record_id: Any = None
    deleted_ids: List[Any] = field(default_factory=list)
    steps: List[ReconcileStep] = field(default_factory=list)

    @property
    def write_count(self) -> int:
        return len(self.steps)


@dataclass
class ConstituentMatch:
    """A confirmed remote constituent."""
    id: Any
    matched_email: Optional[str]
    method: str


@dataclass
class MembershipRecord:
    """A membership attached to a constituent."""
    level_id: Optional[int]
    level_name: str
    start_date: date
    end_date: Optional[date] = None
    note: str = ""
    id: Any = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "membership_level_id": self.level_id,
            "membership_level_name": self.level_name,
            "date_start": self.start_date.isoformat(),
            "note": self.note,
        }
        if self.end_date is not None:
            payload["finish_date"] = self.end_date.isoformat()
        return payload


class PurchaseCategory(str, Enum):
    MEMBERSHIP = "membership"
    LANGUAGE_CLASS = "language_class"
    EVENTS = "events"
    OTHER = "other"


@dataclass
class PurchaseItem:
    """
    A purchased line item, read-only input from the order catalog.

    ``categories`` holds the product's category taxonomy terms;
    ``fund_marker`` is the explicit fund-sync marker some products carry;
    ``fund_id`` is a product-level fund (e.g. a specific class);
    ``membership_level_id`` is the remote level a membership product grants.
    """
    name: str
    quantity: int = 1
    total: Decimal = Decimal("0")
    categories: List[str] = field(default_factory=list)
    fund_marker: Optional[int] = None
    fund_id: Optional[int] = None
    membership_level_id: Optional[int] = None


@dataclass
class PurchaseEvent:
    """An order placed by a local entity."""
    order_id: Any
    total: Decimal
    payment_method: str = ""
    order_date: date = field(default_factory=date.today)
    items: List[PurchaseItem] = field(default_factory=list)
    coupons: List[str] = field(default_factory=list)
    discount_total: Decimal = Decimal("0")


@dataclass
class PaymentRecord:
    """
    An append-only gift/payment on the remote side.

    Payments are never updated; ``external_id`` is the idempotency key.
    """
    external_id: str
    amount: Decimal
    received_date: date
    fund_id: int
    category_id: Optional[int] = None
    campaign_id: Optional[int] = None
    gift_type_id: Optional[int] = None
    payment_type_id: Optional[int] = None
    note: str = ""
    category: PurchaseCategory = PurchaseCategory.OTHER


@dataclass
class MembershipRenewal:
    """
    Writes made to replace a constituent's active membership.

    ``already_current`` is set when an active membership at the same level
    and start date existed, in which case nothing was written.
    """
    level_id: Optional[int]
    level_name: str
    deactivated: List[Any] = field(default_factory=list)
    added: Any = None
    already_current: bool = False

    @property
    def success(self) -> bool:
        responses = self.deactivated + ([self.added] if self.added is not None else [])
        return all(response.success for response in responses)


@dataclass
class PurchaseOutcome:
    """
    Everything written for one order.

    ``payments`` maps each payment ``external_id`` to its response, so a
    replay can skip the gifts that were already posted. ``errors`` holds
    the typed errors of membership items whose lookups failed.
    """
    constituent_id: Any
    order_id: Any
    payments: Dict[str, Any] = field(default_factory=dict)
    memberships: List[MembershipRenewal] = field(default_factory=list)
    groups: List[Any] = field(default_factory=list)
    errors: List[Any] = field(default_factory=list)

    @property
    def posted_ids(self) -> List[str]:
        return [eid for eid, response in self.payments.items() if response.success]

    @property
    def failed_ids(self) -> List[str]:
        return [eid for eid, response in self.payments.items() if not response.success]

    @property
    def success(self) -> bool:
        return (
            not self.failed_ids
            and not self.errors
            and all(renewal.success for renewal in self.memberships)
            and all(response.success for response in self.groups)
        )
