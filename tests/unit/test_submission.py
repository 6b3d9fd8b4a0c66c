"""
Unit tests for the submission validator and the confirmation gate.
"""
from datetime import timedelta
from unittest.mock import Mock

import pydantic
import pytest

from pharmacy_orders.exceptions import (
    InsufficientStockError,
    MissingStockRecordError,
    NoItemsError,
    StaleInventoryError,
    ValidationError,
)
from pharmacy_orders.matching import create_selections_from_mentions, update_selection
from pharmacy_orders.models import PaymentMethod, Selection
from pharmacy_orders.submission import PendingSubmission, build_order_request

from conftest import T0, mentions, snapshot


@pytest.fixture
def result(pharmacies):
    return create_selections_from_mentions(mentions('Paracetamol', 'Cetirizine'), pharmacies, now=T0)


class TestBuildOrderRequest:

    def test_builds_request_and_summary(self, pharmacies, address):
        result = create_selections_from_mentions(mentions('Cetirizine', 'paracetamol'), pharmacies, now=T0)
        result = update_selection(result, 'paracetamol', pharmacy_id='ph-2', quantity=2)
        result = update_selection(result, 'Cetirizine', quantity=3)

        draft = build_order_request(result, pharmacies, address, PaymentMethod.UPI, now=T0)

        assert draft.request.pharmacyId == 'ph-2'
        assert [(i.medicineId, i.quantity) for i in draft.request.items] == [('med-2-cet', 3), ('med-2-para', 2)]
        assert draft.request.paymentMethod == PaymentMethod.UPI
        assert draft.summary.pharmacyName == 'Green Cross Chemists'
        assert draft.summary.totalPrice == 18.0
        assert draft.summary.itemCount == 2
        assert draft.summary.mixedPharmacies is False
        assert [line.unitPrice for line in draft.lineItems] == [3.0, 4.5]

    def test_request_is_immutable(self, pharmacies, address):
        result = create_selections_from_mentions(mentions('Paracetamol'), pharmacies, now=T0)
        draft = build_order_request(result, pharmacies, address, now=T0)
        with pytest.raises(pydantic.ValidationError):
            draft.request.pharmacyId = 'ph-2'

    def test_scenario_insufficient_stock(self, pharmacies, address):
        result = create_selections_from_mentions(mentions('Paracetamol'), pharmacies, now=T0)
        result = update_selection(result, 'Paracetamol', pharmacy_id='ph-2', quantity=5)

        with pytest.raises(InsufficientStockError) as exc_info:
            build_order_request(result, pharmacies, address, now=T0)

        assert exc_info.value.available == 2
        assert exc_info.value.requested == 5
        assert 'available 2, requested 5' in exc_info.value.message

    def test_checks_live_stock_not_matched_snapshot(self, pharmacies, address):
        result = create_selections_from_mentions(mentions('Paracetamol'), pharmacies, now=T0)
        result = update_selection(result, 'Paracetamol', quantity=4)
        live = [snapshot('ph-1', 'City Care Pharmacy', ('med-1-para', 'Paracetamol', 5.0, 3))]

        with pytest.raises(InsufficientStockError) as exc_info:
            build_order_request(result, live, address, now=T0)
        assert exc_info.value.detail == {'drugName': 'Paracetamol', 'available': 3, 'requested': 4}

    def test_no_selections(self, pharmacies, address):
        result = create_selections_from_mentions(mentions('Amoxicillin'), pharmacies, now=T0)
        with pytest.raises(NoItemsError):
            build_order_request(result, pharmacies, address, now=T0)

    def test_missing_live_record(self, result, address):
        live = [snapshot('ph-1', 'City Care Pharmacy'), snapshot('ph-2', 'Green Cross Chemists')]
        with pytest.raises(MissingStockRecordError) as exc_info:
            build_order_request(result, live, address, now=T0)
        assert exc_info.value.detail['drugName'] == 'Paracetamol'

    def test_pharmacy_without_the_drug_has_no_record(self, pharmacies, address):
        result = create_selections_from_mentions(mentions('Paracetamol'), pharmacies, now=T0)
        result = update_selection(result, 'Paracetamol', pharmacy_id='ph-3')
        with pytest.raises(MissingStockRecordError):
            build_order_request(result, pharmacies, address, now=T0)

    def test_medicine_id_of_another_drug_is_not_accepted(self, pharmacies, address):
        result = create_selections_from_mentions(mentions('Paracetamol'), pharmacies, now=T0)
        result = result.model_copy(update={
            'selections': {'Paracetamol': Selection(pharmacyId='ph-2', medicineId='med-2-cet', quantity=1)},
        })
        with pytest.raises(MissingStockRecordError) as exc_info:
            build_order_request(result, pharmacies, address, now=T0)
        assert exc_info.value.detail['drugName'] == 'Paracetamol'

    def test_expired_result_is_stale(self, result, pharmacies, address):
        with pytest.raises(StaleInventoryError) as exc_info:
            build_order_request(result, pharmacies, address, now=result.expiresAt)
        assert exc_info.value.code == 'MATCHING_RESULT_EXPIRED'

    def test_price_change_is_stale(self, pharmacies, address):
        result = create_selections_from_mentions(mentions('Paracetamol'), pharmacies, now=T0)
        live = [snapshot('ph-1', 'City Care Pharmacy', ('med-1-para', 'Paracetamol', 5.5, 10))]
        with pytest.raises(StaleInventoryError) as exc_info:
            build_order_request(result, live, address, now=T0)
        assert exc_info.value.detail == {'drugName': 'Paracetamol', 'previous': 5.0, 'current': 5.5}


class TestMixedPharmacies:

    def test_first_owner_keeps_foreign_items_and_flags_summary(self, result, pharmacies, address):
        # Paracetamol -> ph-1, Cetirizine -> ph-2
        draft = build_order_request(result, pharmacies, address, now=T0, mixed_pharmacy_policy='first_owner')
        assert draft.request.pharmacyId == 'ph-1'
        assert [i.medicineId for i in draft.request.items] == ['med-1-para', 'med-2-cet']
        assert draft.summary.mixedPharmacies is True
        assert draft.summary.totalPrice == 8.0

    def test_strict_rejects_mixed_selections(self, result, pharmacies, address):
        with pytest.raises(ValidationError) as exc_info:
            build_order_request(result, pharmacies, address, now=T0, mixed_pharmacy_policy='strict')
        assert exc_info.value.code == 'MIXED_PHARMACY_ORDER'
        assert exc_info.value.detail == {'pharmacyIds': ['ph-1', 'ph-2']}


class TestPendingSubmission:

    @pytest.fixture
    def draft(self, pharmacies, address):
        result = create_selections_from_mentions(mentions('Paracetamol'), pharmacies, now=T0)
        return build_order_request(result, pharmacies, address, now=T0)

    def test_confirm_submits_once(self, draft):
        submit = Mock(return_value=Mock(id='order-1'))
        submission = PendingSubmission(draft, 'cust-1', submit)

        order = submission.confirm(now=T0)

        assert order.id == 'order-1'
        submit.assert_called_once_with(draft, 'cust-1')
        assert submission.state == PendingSubmission.CONFIRMED
        with pytest.raises(ValidationError) as exc_info:
            submission.confirm(now=T0)
        assert exc_info.value.code == 'SUBMISSION_CLOSED'
        assert submit.call_count == 1

    def test_cancel_has_no_side_effects(self, draft):
        submit = Mock()
        submission = PendingSubmission(draft, 'cust-1', submit)

        submission.cancel()

        submit.assert_not_called()
        with pytest.raises(ValidationError):
            submission.confirm(now=T0)

    def test_failed_submit_leaves_submission_open(self, draft):
        submit = Mock(side_effect=[RuntimeError('store down'), Mock(id='order-2')])
        submission = PendingSubmission(draft, 'cust-1', submit)

        with pytest.raises(RuntimeError):
            submission.confirm(now=T0)
        assert submission.state == PendingSubmission.OPEN
        assert submission.confirm(now=T0).id == 'order-2'

    def test_expired_submission(self, draft):
        submission = PendingSubmission(draft, 'cust-1', Mock(), expires_at=T0 + timedelta(seconds=60))
        with pytest.raises(StaleInventoryError):
            submission.confirm(now=T0 + timedelta(seconds=60))
