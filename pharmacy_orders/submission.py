"""
submission.py — Order Submission Validator and Confirmation Gate

Revalidates the customer's selections against live stock, computes the total
shown for confirmation and builds the immutable OrderCreationRequest.
Nothing is submitted here: the caller gets a PendingSubmission and has to
confirm (or cancel) it explicitly before the order is created.
"""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from . import config
from .exceptions import (
    InsufficientStockError,
    MissingStockRecordError,
    NoItemsError,
    StaleInventoryError,
    ValidationError,
)
from .models import (
    DeliveryAddress,
    MatchingResult,
    Order,
    OrderCreationRequest,
    OrderDraft,
    OrderItemRequest,
    OrderLineItem,
    OrderSummary,
    PaymentMethod,
    PharmacyInventorySnapshot,
)

log = logging.getLogger(__name__)

POLICY_FIRST_OWNER = "first_owner"
POLICY_STRICT = "strict"


def build_order_request(
        result: MatchingResult,
        live_pharmacies: List[PharmacyInventorySnapshot],
        delivery_address: DeliveryAddress,
        payment_method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY,
        now: Optional[datetime] = None,
        mixed_pharmacy_policy: str = config.MIXED_PHARMACY_POLICY,
) -> OrderDraft:
    """
    Validates the selections of a matching result and builds the order request.

    The pharmacy of the first selection owns the order. Every selection is checked
    against the live stock record of its own chosen pharmacy.

    Args:
        result: The caller-owned matching result holding the selections.
        live_pharmacies: Fresh inventory snapshots for the selected pharmacies.
        delivery_address: Delivery destination.
        payment_method: Payment collected on delivery.
        now: Reference time for the expiry check.
        mixed_pharmacy_policy: "first_owner" keeps foreign-pharmacy items in the
            request (and flags the summary); "strict" rejects them.

    Returns:
        OrderDraft: request, confirmation summary and priced line items.

    Raises:
        StaleInventoryError: The result expired or a price changed since matching.
        NoItemsError: There are no selections.
        ValidationError: Mixed pharmacies under the strict policy.
        MissingStockRecordError: A selection's stock record no longer exists.
        InsufficientStockError: A selection asks for more than is in stock.
    """
    now = now or datetime.now(timezone.utc)
    if result.is_expired(now):
        raise StaleInventoryError(
            f"Matching result expired at {result.expiresAt.isoformat()}; match the prescription again.",
            code='MATCHING_RESULT_EXPIRED',
            detail={'expiresAt': result.expiresAt.isoformat()},
        )

    if not result.selections:
        raise NoItemsError()

    live_by_id = {p.pharmacyId: p for p in live_pharmacies}
    owner_id = next(iter(result.selections.values())).pharmacyId

    pharmacy_ids = []
    for selection in result.selections.values():
        if selection.pharmacyId not in pharmacy_ids:
            pharmacy_ids.append(selection.pharmacyId)
    mixed = len(pharmacy_ids) > 1
    if mixed:
        if mixed_pharmacy_policy == POLICY_STRICT:
            raise ValidationError(
                f"All medicines must come from one pharmacy, got {len(pharmacy_ids)}: {', '.join(pharmacy_ids)}.",
                code='MIXED_PHARMACY_ORDER',
                detail={'pharmacyIds': pharmacy_ids},
            )
        log.warning(
            f"Selections span pharmacies {pharmacy_ids}; order is owned by {owner_id} (first selection)."
        )

    items = []
    line_items = []
    for drug_name, selection in result.selections.items():
        live = live_by_id.get(selection.pharmacyId)
        record = live.find_by_id(selection.medicineId) if live and selection.medicineId else None
        if record is not None and record.medicineName.strip().lower() != drug_name.strip().lower():
            record = None
        if record is None:
            raise MissingStockRecordError(drug_name, selection.pharmacyId, selection.medicineId)

        seen_pharmacy = result.pharmacy(selection.pharmacyId)
        seen = seen_pharmacy.find_by_id(selection.medicineId) if seen_pharmacy else None
        if seen is not None and seen.unitPrice != record.unitPrice:
            raise StaleInventoryError(
                f"Price of {drug_name} changed from {seen.unitPrice:.2f} to {record.unitPrice:.2f}.",
                code='PRICE_CHANGED',
                detail={'drugName': drug_name, 'previous': seen.unitPrice, 'current': record.unitPrice},
            )

        if selection.quantity > record.stockQuantity:
            raise InsufficientStockError(drug_name, record.stockQuantity, selection.quantity)

        items.append(OrderItemRequest(medicineId=record.medicineId, quantity=selection.quantity))
        line_items.append(OrderLineItem(
            drugName=drug_name,
            medicineId=record.medicineId,
            medicineName=record.medicineName,
            pharmacyId=selection.pharmacyId,
            unitPrice=record.unitPrice,
            quantity=selection.quantity,
        ))

    total = round(sum(line.subtotal for line in line_items), 2)
    owner = live_by_id.get(owner_id) or result.pharmacy(owner_id)

    request = OrderCreationRequest(
        pharmacyId=owner_id,
        items=tuple(items),
        deliveryAddress=delivery_address,
        paymentMethod=payment_method,
    )
    summary = OrderSummary(
        pharmacyId=owner_id,
        pharmacyName=owner.pharmacyName if owner else owner_id,
        totalPrice=total,
        itemCount=len(items),
        mixedPharmacies=mixed,
    )
    return OrderDraft(request=request, summary=summary, lineItems=tuple(line_items))


class PendingSubmission:
    """
    Confirmation gate between a validated draft and the order store.

    confirm() places the order exactly once; cancel() discards the draft.
    Once either happened the submission is closed.
    """

    OPEN = "open"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

    def __init__(
            self,
            draft: OrderDraft,
            customer_id: str,
            submit: Callable[[OrderDraft, str], Order],
            expires_at: Optional[datetime] = None,
            submission_id: Optional[str] = None,
    ):
        self.id = submission_id or str(uuid.uuid4())
        self.draft = draft
        self.customer_id = customer_id
        self.expires_at = expires_at
        self.state = self.OPEN
        self.order = None
        self._submit = submit
        self._lock = threading.Lock()

    @property
    def summary(self) -> OrderSummary:
        return self.draft.summary

    def _ensure_open(self):
        if self.state != self.OPEN:
            raise ValidationError(
                f"Submission {self.id} is already {self.state}.",
                code='SUBMISSION_CLOSED',
                detail={'submissionId': self.id, 'state': self.state},
            )

    def confirm(self, now: Optional[datetime] = None) -> Order:
        with self._lock:
            self._ensure_open()
            now = now or datetime.now(timezone.utc)
            if self.expires_at is not None and now >= self.expires_at:
                raise StaleInventoryError(
                    f"Submission {self.id} expired; review the order again.",
                    code='SUBMISSION_EXPIRED',
                    detail={'submissionId': self.id},
                )
            self.order = self._submit(self.draft, self.customer_id)
            self.state = self.CONFIRMED
            log.info(f"[Order: {self.order.id}] Submission {self.id} confirmed by customer {self.customer_id}.")
            return self.order

    def cancel(self):
        with self._lock:
            self._ensure_open()
            self.state = self.CANCELLED
            log.info(f"Submission {self.id} cancelled by customer {self.customer_id}.")
