"""
Unit tests for the error taxonomy.
"""
from pharmacy_orders.exceptions import (
    AssignmentInProgressError,
    InsufficientStockError,
    InvalidTransitionError,
    MissingStockRecordError,
    NoItemsError,
    NotFoundError,
    PharmacyOrderError,
    StaleInventoryError,
    ValidationError,
)


class TestErrorDefaults:

    def test_class_defaults(self):
        cases = [
            (ValidationError('x'), 'validation_error', 'VALIDATION_ERROR', 400),
            (NoItemsError(), 'validation_error', 'NO_ITEMS', 400),
            (NotFoundError('x'), 'not_found', 'NOT_FOUND', 404),
            (InvalidTransitionError('x'), 'conflict', 'INVALID_TRANSITION', 409),
            (AssignmentInProgressError('x'), 'conflict', 'ASSIGNMENT_IN_PROGRESS', 409),
            (StaleInventoryError('x'), 'conflict', 'STALE_INVENTORY', 409),
        ]
        for error, error_type, code, status in cases:
            assert isinstance(error, PharmacyOrderError)
            assert (error.type, error.code, error.http_status) == (error_type, code, status)

    def test_code_and_status_can_be_overridden_per_instance(self):
        error = ValidationError('bad quantity', code='INVALID_QUANTITY', http_status=422)
        assert error.code == 'INVALID_QUANTITY'
        assert error.http_status == 422
        assert ValidationError.code == 'VALIDATION_ERROR'

    def test_missing_stock_record_is_not_found(self):
        error = MissingStockRecordError('Paracetamol', 'ph-3', '')
        assert isinstance(error, NotFoundError)
        assert 'ph-3' in error.message
        assert error.detail == {'drugName': 'Paracetamol', 'pharmacyId': 'ph-3', 'medicineId': ''}


class TestToDict:

    def test_detail_is_omitted_when_absent(self):
        assert InvalidTransitionError('nope').to_dict() == {
            'type': 'conflict',
            'code': 'INVALID_TRANSITION',
            'message': 'nope',
        }

    def test_insufficient_stock_body(self):
        body = InsufficientStockError('Paracetamol', available=2, requested=5).to_dict()
        assert body == {
            'type': 'conflict',
            'code': 'INSUFFICIENT_STOCK',
            'message': 'Insufficient stock for Paracetamol: available 2, requested 5.',
            'detail': {'drugName': 'Paracetamol', 'available': 2, 'requested': 5},
        }
