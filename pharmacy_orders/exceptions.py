"""
exceptions.py — Error Taxonomy for Matching, Submission and Order Lifecycle

Every business error derives from PharmacyOrderError and carries:
    - type:        error family ('validation_error', 'not_found', 'conflict')
    - code:        machine readable error code (e.g. 'INSUFFICIENT_STOCK')
    - message:     human readable description naming the failed precondition
    - detail:      optional structured context (dict)
    - http_status: status code used by the API layer

Services only raise; the API exception handler formats the response.
"""


class PharmacyOrderError(Exception):
    """Base class for all business errors."""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)

    def to_dict(self):
        body = {
            'type': self.type,
            'code': self.code,
            'message': self.message,
        }
        if self.detail is not None:
            body['detail'] = self.detail
        return body


class ValidationError(PharmacyOrderError):
    """Malformed or missing selection / request data."""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class NoItemsError(ValidationError):
    code = 'NO_ITEMS'

    def __init__(self, message="No items to order."):
        super().__init__(message)


class NotFoundError(PharmacyOrderError):
    """Unknown order, pharmacy or medicine id."""

    type = 'not_found'
    code = 'NOT_FOUND'
    http_status = 404


class MissingStockRecordError(NotFoundError):
    code = 'MISSING_STOCK_RECORD'

    def __init__(self, drug_name, pharmacy_id, medicine_id):
        super().__init__(
            f"No stock record for '{drug_name}' (medicine {medicine_id or '-'}) "
            f"at pharmacy {pharmacy_id}.",
            detail={'drugName': drug_name, 'pharmacyId': pharmacy_id, 'medicineId': medicine_id},
        )


class InsufficientStockError(PharmacyOrderError):
    type = 'conflict'
    code = 'INSUFFICIENT_STOCK'
    http_status = 409

    def __init__(self, drug_name, available, requested):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {drug_name}: available {available}, requested {requested}.",
            detail={'drugName': drug_name, 'available': available, 'requested': requested},
        )


class InvalidTransitionError(PharmacyOrderError):
    """Wrong actor or wrong current status. The order is left unchanged."""

    type = 'conflict'
    code = 'INVALID_TRANSITION'
    http_status = 409


class AssignmentInProgressError(PharmacyOrderError):
    type = 'conflict'
    code = 'ASSIGNMENT_IN_PROGRESS'
    http_status = 409


class StaleInventoryError(PharmacyOrderError):
    """Stock changed (or the matching result expired) between matching and submission."""

    type = 'conflict'
    code = 'STALE_INVENTORY'
    http_status = 409
