"""
models.py — Data Models for Prescription Matching and Order Lifecycle

This module defines the data structures exchanged between the matching engine,
the submission validator, the order lifecycle coordinator and the API.
It uses Pydantic models to ensure type safety and automatic validation of incoming data.

Models:
    - ExtractedDrugMention, StockItem, PharmacyInventorySnapshot: inputs to matching.
    - Selection, MatchingResult: the customer's (immutable) pharmacy/medicine/quantity choices.
    - OrderCreationRequest, OrderDraft, OrderSummary: validated, immutable order intent.
    - Order, StatusHistoryEntry, DeliveryAssignment: the persisted order entity.
    - StatusChangedEvent, LocationUpdatedEvent: realtime events published per order.
    - DeliveryAgent, DeliveryAgentAvailability: the delivery agent roster.
    - Request bodies used by the HTTP API.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


# --- Enums ---

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    ASSIGNED = "assigned"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    PHARMACY = "pharmacy"
    DELIVERY_AGENT = "delivery_agent"
    SYSTEM = "system"


class AssignmentState(str, Enum):
    PENDING_ACCEPTANCE = "pending_acceptance"
    ACCEPTED = "accepted"


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "cash_on_delivery"
    CARD_ON_DELIVERY = "card_on_delivery"
    UPI = "upi"


# --- Matching inputs ---

class ExtractedDrugMention(BaseModel):
    """A drug name as read from the prescription image by the OCR service."""
    name: str


class StockItem(BaseModel):
    """
    A pharmacy's priced, quantity-tracked entry for one medicine.

    Attributes:
        medicineId (str): Stock record identifier.
        medicineName (str): Display name, matched case-insensitively against mentions.
        unitPrice (float): Current price per unit.
        stockQuantity (int): Units currently on hand.
    """
    medicineId: str
    medicineName: str
    unitPrice: float = Field(..., ge=0)
    stockQuantity: int = Field(..., ge=0)


class PharmacyInventorySnapshot(BaseModel):
    pharmacyId: str
    pharmacyName: str
    stockItems: List[StockItem] = Field(default_factory=list)

    def find_by_name(self, drug_name: str, in_stock_only: bool = False) -> Optional[StockItem]:
        wanted = drug_name.lower()
        for item in self.stockItems:
            if item.medicineName.lower() != wanted:
                continue
            if in_stock_only and item.stockQuantity <= 0:
                continue
            return item
        return None

    def find_by_id(self, medicine_id: str) -> Optional[StockItem]:
        for item in self.stockItems:
            if item.medicineId == medicine_id:
                return item
        return None


# --- Selections ---

class Selection(BaseModel):
    """
    The customer's current choice for one drug name.

    An empty medicineId means the chosen pharmacy does not carry the drug.
    """
    model_config = ConfigDict(frozen=True)

    pharmacyId: str
    medicineId: str = ""
    quantity: int = Field(1, ge=1)


class MatchingResult(BaseModel):
    """
    Caller-owned outcome of matching one prescription.

    The result is immutable; selection edits return a new instance. It carries the
    inventory snapshots it was matched against and expires after a short TTL, after
    which the caller has to match again.

    The service keeps its own copy under resultId. A copy posted back by a client
    only contributes its selections; snapshots and expiry are taken from the
    server-held copy.
    """
    model_config = ConfigDict(frozen=True)

    resultId: str = Field(default_factory=lambda: str(uuid.uuid4()))
    extractedText: str = ""
    mentions: List[ExtractedDrugMention]
    pharmacies: List[PharmacyInventorySnapshot]
    selections: Dict[str, Selection]
    unavailable: List[str] = Field(default_factory=list)
    createdAt: datetime
    expiresAt: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expiresAt

    def pharmacy(self, pharmacy_id: str) -> Optional[PharmacyInventorySnapshot]:
        for snapshot in self.pharmacies:
            if snapshot.pharmacyId == pharmacy_id:
                return snapshot
        return None


class PharmacyOption(BaseModel):
    pharmacyId: str
    pharmacyName: str
    medicineId: str
    unitPrice: float
    stockQuantity: int


# --- Order creation ---

class Coordinate(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class DeliveryAddress(BaseModel):
    street: str
    city: str
    state: str = ""
    zipCode: str = ""
    country: str = ""
    location: Optional[Coordinate] = None
    contactPhone: str = ""


class OrderItemRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    medicineId: str
    quantity: int = Field(..., gt=0)


class OrderCreationRequest(BaseModel):
    """
    Immutable, validated order intent handed to the order store.

    Attributes:
        pharmacyId (str): The pharmacy owning the order.
        items (tuple[OrderItemRequest]): Stock records and quantities.
        deliveryAddress (DeliveryAddress): Where the order goes.
        paymentMethod (PaymentMethod): How the customer pays on delivery.
    """
    model_config = ConfigDict(frozen=True)

    pharmacyId: str
    items: Tuple[OrderItemRequest, ...]
    deliveryAddress: DeliveryAddress
    paymentMethod: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY


class OrderLineItem(BaseModel):
    """A line item with its unit price bound at creation time."""
    model_config = ConfigDict(frozen=True)

    drugName: str
    medicineId: str
    medicineName: str
    pharmacyId: str
    unitPrice: float
    quantity: int

    @property
    def subtotal(self) -> float:
        return self.unitPrice * self.quantity


class OrderSummary(BaseModel):
    """What the customer is asked to confirm before the order is placed."""
    model_config = ConfigDict(frozen=True)

    pharmacyId: str
    pharmacyName: str
    totalPrice: float
    itemCount: int
    mixedPharmacies: bool = False


class OrderDraft(BaseModel):
    model_config = ConfigDict(frozen=True)

    request: OrderCreationRequest
    summary: OrderSummary
    lineItems: Tuple[OrderLineItem, ...]


# --- Order entity ---

class Actor(BaseModel):
    """Identity supplied by the authentication collaborator."""
    actorId: str
    role: ActorRole


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: OrderStatus
    timestamp: datetime
    actorId: Optional[str] = None
    note: Optional[str] = None


class DeliveryAssignment(BaseModel):
    agentId: str
    state: AssignmentState = AssignmentState.PENDING_ACCEPTANCE
    proposedAt: datetime
    expiresAt: datetime
    respondedAt: Optional[datetime] = None


class DeliveryAgent(BaseModel):
    agentId: str
    name: str
    phone: str = ""


class DeliveryAgentAvailability(DeliveryAgent):
    """Roster entry as shown to a pharmacy choosing whom to assign."""
    available: bool
    activeOrderId: Optional[str] = None


class Order(BaseModel):
    """
    The central order entity.

    Prices on the line items are a snapshot taken at creation and never recomputed.
    statusHistory is append-only. deliveryAgentId is only set once an agent accepted.
    """
    id: str
    pharmacyId: str
    customerId: str
    items: List[OrderLineItem]
    totalAmount: float
    deliveryAddress: DeliveryAddress
    paymentMethod: PaymentMethod
    status: OrderStatus = OrderStatus.PENDING
    statusHistory: List[StatusHistoryEntry] = Field(default_factory=list)
    deliveryAgentId: Optional[str] = None
    assignment: Optional[DeliveryAssignment] = None
    trackingLocation: Optional[Coordinate] = None
    createdAt: datetime
    updatedAt: datetime

    @property
    def awaiting_acceptance(self) -> bool:
        return (
            self.assignment is not None
            and self.assignment.state == AssignmentState.PENDING_ACCEPTANCE
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# --- Realtime events ---

class StatusChangedEvent(BaseModel):
    type: Literal["status_changed"] = "status_changed"
    orderId: str
    status: OrderStatus
    order: Order
    occurredAt: datetime


class LocationUpdatedEvent(BaseModel):
    type: Literal["location_updated"] = "location_updated"
    orderId: str
    location: Coordinate
    occurredAt: datetime


OrderEvent = Union[StatusChangedEvent, LocationUpdatedEvent]


# --- API request / response bodies ---

class UpdateSelectionRequest(BaseModel):
    result: MatchingResult
    drugName: str
    pharmacyId: Optional[str] = None
    quantity: Optional[int] = None


class PharmacyOptionsRequest(BaseModel):
    result: MatchingResult
    drugName: str


class QuoteRequest(BaseModel):
    result: MatchingResult
    deliveryAddress: DeliveryAddress
    paymentMethod: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY


class QuoteResponse(BaseModel):
    submissionId: str
    request: OrderCreationRequest
    summary: OrderSummary
    lineItems: List[OrderLineItem]


class TransitionRequest(BaseModel):
    action: str


class AssignmentRequest(BaseModel):
    agentId: str


class AssignmentResponseRequest(BaseModel):
    accept: bool
