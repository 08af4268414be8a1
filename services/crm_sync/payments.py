"""
Payment recording.

Payments are append-only: they are created, never updated. The
``external_id`` carries the local order id so a replayed payment can be
recognized on the remote side.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable

import structlog

from .attributor import PaymentAttributor
from .client import ApiResponse, RemoteClient
from .models import PaymentRecord, PurchaseEvent


def format_amount(amount: Any) -> str:
    """
    Format an amount as a fixed two-decimal string.

    Examples:
        >>> format_amount(Decimal("75"))
        '75.00'
        >>> format_amount(12.5)
        '12.50'
    """
    return str(Decimal(str(amount)).quantize(Decimal("0.01")))


def build_gift_payload(record: PaymentRecord) -> Dict[str, Any]:
    """
    Build the gifts.json body for a payment.

    Deductible and deposited amounts equal the received amount and the
    deposit date equals the received date. Unresolved optional ids are
    left out.
    """
    amount = format_amount(record.amount)
    received = record.received_date.isoformat()

    payload: Dict[str, Any] = {
        "external_id": record.external_id,
        "gift_type_id": record.gift_type_id,
        "gift_category_id": record.category_id,
        "campaign_id": record.campaign_id,
        "fund_id": record.fund_id,
        "received_amount": amount,
        "received_date": received,
        "payment_type_id": record.payment_type_id,
        "note": record.note,
        "deductible_amount": amount,
        "deposit_date": received,
        "deposited_amount": amount,
    }
    return {key: value for key, value in payload.items() if value is not None}


class PaymentService:
    """Create payments for constituents."""

    def __init__(self, client: RemoteClient, attributor: PaymentAttributor, logger: Any = None):
        self.client = client
        self.attributor = attributor
        self._logger = logger or structlog.get_logger(__name__)

    def create(self, constituent_id: Any, record: PaymentRecord) -> ApiResponse:
        """
        Post one payment.

        Returns:
            Normalized response; failures are logged with the external id
            for manual replay
        """
        endpoint = f"constituents/{constituent_id}/gifts.json"
        response = self.client.post(endpoint, build_gift_payload(record))

        if response.success:
            self._logger.info(
                "Payment created",
                constituent_id=constituent_id,
                external_id=record.external_id,
                gift_id=response.record_id,
                amount=format_amount(record.amount),
            )
            self.client.invalidate(f"constituents/{constituent_id}/gifts")
        else:
            self._logger.error(
                "Payment creation failed",
                constituent_id=constituent_id,
                external_id=record.external_id,
                endpoint=endpoint,
                status_code=response.http_status,
                error=response.error,
            )
        return response

    def record_purchase(
        self,
        constituent_id: Any,
        event: PurchaseEvent,
        skip_external_ids: Iterable[str] = (),
    ) -> Dict[str, ApiResponse]:
        """
        Attribute and record every payment of an order.

        Attribution runs for the whole order before anything is posted,
        so an unresolvable fund records nothing.

        Args:
            constituent_id: Remote constituent id
            event: The order
            skip_external_ids: Payments already posted by an earlier pass

        Returns:
            Response per payment external id, in order

        Raises:
            AttributionError: a payment's fund could not be resolved
        """
        records = self.attributor.attribute_order(event)
        skip = {str(external_id) for external_id in skip_external_ids}

        responses: Dict[str, ApiResponse] = {}
        for record in records:
            if record.external_id in skip:
                self._logger.info(
                    "Payment already posted, skipping",
                    constituent_id=constituent_id,
                    external_id=record.external_id,
                )
                continue
            responses[record.external_id] = self.create(constituent_id, record)
        return responses
