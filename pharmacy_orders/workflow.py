"""
workflow.py — Prescription-to-Order Orchestration

This module ties the external collaborators to the core logic:

1. Read the prescription via the OCR Service (REST)
2. Fetch candidate pharmacy inventory via the Inventory Service (gRPC)
3. Match mentions to stock (matching engine)
4. Revalidate selections against live stock before the order is placed,
   falling back to the snapshots kept from matching if the
   Inventory Service is unreachable
5. Hold the validated draft behind a confirm/cancel gate, then hand it to the
   order lifecycle coordinator

Matching results travel to the client and back. The workflow keeps its own copy
of every result it issued; a posted result only contributes its selections, while
snapshots, prices and expiry always come from the server-held copy.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List

import grpc

from . import config
from .coordinator import OrderCoordinator
from .exceptions import NotFoundError, StaleInventoryError, ValidationError
from .matching import create_selections_from_mentions, dedupe_mentions
from .models import (
    DeliveryAddress,
    MatchingResult,
    Order,
    PaymentMethod,
    PharmacyInventorySnapshot,
)
from .submission import PendingSubmission, build_order_request

log = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


class PrescriptionWorkflow:
    """
    Runs the customer's side of ordering: prescription upload, matching,
    revalidation and confirmation.

    Args:
        coordinator (OrderCoordinator): Creates confirmed orders.
        inventory: Object with get_pharmacy_stock(pharmacy_ids), usually InventoryClient.
        ocr: Object with extract_drug_mentions(image, filename, content_type), usually OcrClient.
    """

    def __init__(self, coordinator: OrderCoordinator, inventory, ocr, clock=_utcnow,
                 ttl_seconds: float = config.MATCH_RESULT_TTL_SECONDS,
                 mixed_pharmacy_policy: str = config.MIXED_PHARMACY_POLICY):
        self.coordinator = coordinator
        self.inventory = inventory
        self.ocr = ocr
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self.mixed_pharmacy_policy = mixed_pharmacy_policy
        self._results: Dict[str, MatchingResult] = {}
        self._submissions: Dict[str, PendingSubmission] = {}
        self._lock = threading.Lock()

    def match_prescription(self, image: bytes, filename: str = "prescription.png",
                           content_type: str = "image/png", pharmacy_ids=()) -> MatchingResult:
        """
        Extracts the medicines from a prescription image and matches them to pharmacy stock.

        Raises:
            httpx.HTTPError: If the OCR Service fails.
            grpc.RpcError: If the Inventory Service fails.
        """
        log.info(f"Processing prescription {filename} ({len(image)} bytes).")
        text, mentions = self.ocr.extract_drug_mentions(image, filename, content_type)
        unique = dedupe_mentions(mentions)

        pharmacies = []
        if unique:
            pharmacies = self.inventory.get_pharmacy_stock(list(pharmacy_ids))
        else:
            log.info(f"No medicines identified in {filename}.")

        result = create_selections_from_mentions(
            unique, pharmacies,
            now=self.clock(),
            ttl_seconds=self.ttl_seconds,
            extracted_text=text,
        )
        with self._lock:
            self._purge_expired()
            self._results[result.resultId] = result
        return result

    def trusted_result(self, posted: MatchingResult) -> MatchingResult:
        """
        Rebuilds a client-posted result from the server-held copy, keeping only the
        posted selections.

        Raises:
            StaleInventoryError: The result is unknown or has expired.
            ValidationError: The selections name medicines the prescription did not.
        """
        with self._lock:
            self._purge_expired()
            issued = self._results.get(posted.resultId)
        if issued is None:
            raise StaleInventoryError(
                f"Matching result {posted.resultId} is unknown or expired; match the prescription again.",
                code='MATCHING_RESULT_EXPIRED',
                detail={'resultId': posted.resultId},
            )

        unexpected = sorted(set(posted.selections) - set(issued.selections))
        if unexpected:
            raise ValidationError(
                f"Selections for medicines not matched on this prescription: {', '.join(unexpected)}.",
                code='UNKNOWN_SELECTION',
                detail={'drugNames': unexpected},
            )
        return issued.model_copy(update={'selections': dict(posted.selections)})

    def live_inventory(self, result: MatchingResult) -> List[PharmacyInventorySnapshot]:
        """
        Current stock for the selected pharmacies. If the lookup fails, the snapshots of
        the result are used; callers pass a server-held result (see trusted_result).
        """
        pharmacy_ids = []
        for selection in result.selections.values():
            if selection.pharmacyId not in pharmacy_ids:
                pharmacy_ids.append(selection.pharmacyId)
        if not pharmacy_ids:
            return []

        try:
            return self.inventory.get_pharmacy_stock(pharmacy_ids)
        except grpc.RpcError as e:
            log.warning(
                f"Live stock lookup for {pharmacy_ids} failed ({e.code()}); "
                f"revalidating against the snapshots from matching."
            )
            return list(result.pharmacies)

    def prepare_submission(self, result: MatchingResult, delivery_address: DeliveryAddress,
                           payment_method: PaymentMethod, customer_id: str) -> PendingSubmission:
        """
        Validates the selections against live stock and opens a confirmation gate.

        Only the selections of the given result are used; see trusted_result().

        Raises:
            StaleInventoryError, NoItemsError, ValidationError,
            MissingStockRecordError, InsufficientStockError: see build_order_request.
            StaleInventoryError: Also raised for unknown or expired results.
        """
        result = self.trusted_result(result)
        live = self.live_inventory(result)
        draft = build_order_request(
            result, live, delivery_address, payment_method,
            now=self.clock(),
            mixed_pharmacy_policy=self.mixed_pharmacy_policy,
        )
        submission = PendingSubmission(
            draft, customer_id,
            submit=self.coordinator.create_order,
            expires_at=result.expiresAt,
        )
        with self._lock:
            self._purge_expired()
            self._submissions[submission.id] = submission
        log.info(
            f"Submission {submission.id} ready for customer {customer_id}: "
            f"{draft.summary.pharmacyName}, total {draft.summary.totalPrice:.2f}."
        )
        return submission

    def _purge_expired(self):
        now = self.clock()
        for result_id, result in list(self._results.items()):
            if result.is_expired(now):
                del self._results[result_id]
        for submission_id, submission in list(self._submissions.items()):
            if submission.expires_at is not None and now >= submission.expires_at:
                del self._submissions[submission_id]

    def get_submission(self, submission_id: str, customer_id: str) -> PendingSubmission:
        with self._lock:
            submission = self._submissions.get(submission_id)
        if submission is None or submission.customer_id != customer_id:
            raise NotFoundError(
                f"Submission {submission_id} not found.",
                code='SUBMISSION_NOT_FOUND',
                detail={'submissionId': submission_id},
            )
        return submission

    def confirm_submission(self, submission_id: str, customer_id: str) -> Order:
        submission = self.get_submission(submission_id, customer_id)
        order = submission.confirm(now=self.clock())
        self._discard(submission_id)
        return order

    def cancel_submission(self, submission_id: str, customer_id: str):
        submission = self.get_submission(submission_id, customer_id)
        submission.cancel()
        self._discard(submission_id)

    def _discard(self, submission_id: str):
        with self._lock:
            self._submissions.pop(submission_id, None)
