"""
Shared fixtures for all tests.

Inventory snapshots, fake collaborators and a coordinator wired to an in-memory
store live here so both unit/ and integration/ can use them.
"""
from datetime import datetime, timedelta, timezone

import grpc
import pytest

from pharmacy_orders.broadcast import BroadcastChannel
from pharmacy_orders.coordinator import OrderCoordinator
from pharmacy_orders.matching import create_selections_from_mentions
from pharmacy_orders.models import (
    Actor,
    ActorRole,
    DeliveryAddress,
    DeliveryAgent,
    ExtractedDrugMention,
    OrderStatus,
    PharmacyInventorySnapshot,
    StockItem,
)
from pharmacy_orders.store import AgentRoster, InMemoryOrderStore
from pharmacy_orders.submission import build_order_request
from pharmacy_orders.workflow import PrescriptionWorkflow

T0 = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

PHARMACY = Actor(actorId='ph-1', role=ActorRole.PHARMACY)
OTHER_PHARMACY = Actor(actorId='ph-2', role=ActorRole.PHARMACY)
CUSTOMER = Actor(actorId='cust-1', role=ActorRole.CUSTOMER)
AGENT_A = Actor(actorId='agent-a', role=ActorRole.DELIVERY_AGENT)
AGENT_B = Actor(actorId='agent-b', role=ActorRole.DELIVERY_AGENT)
SYSTEM = Actor(actorId='scheduler', role=ActorRole.SYSTEM)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeInventory:
    """Stands in for InventoryClient; returns snapshots in requested order."""

    def __init__(self, pharmacies):
        self.pharmacies = list(pharmacies)
        self.calls = []
        self.error = None

    def get_pharmacy_stock(self, pharmacy_ids):
        self.calls.append(list(pharmacy_ids))
        if self.error is not None:
            raise self.error
        if not pharmacy_ids:
            return list(self.pharmacies)
        by_id = {p.pharmacyId: p for p in self.pharmacies}
        return [by_id[i] for i in pharmacy_ids if i in by_id]


class InventoryDown(grpc.RpcError):
    def code(self):
        return grpc.StatusCode.UNAVAILABLE

    def details(self):
        return "connection refused"


class FakeOcr:
    def __init__(self, names, text="Rx"):
        self.names = names
        self.text = text

    def extract_drug_mentions(self, image, filename="prescription.png", content_type="image/png"):
        return self.text, [ExtractedDrugMention(name=n) for n in self.names]


def snapshot(pharmacy_id, name, *items):
    return PharmacyInventorySnapshot(
        pharmacyId=pharmacy_id,
        pharmacyName=name,
        stockItems=[
            StockItem(medicineId=mid, medicineName=mname, unitPrice=price, stockQuantity=qty)
            for mid, mname, price, qty in items
        ],
    )


def mentions(*names):
    return [ExtractedDrugMention(name=n) for n in names]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pharmacies():
    """ph-1 has Paracetamol in stock and Cetirizine sold out; ph-2 has both; ph-3 only Ibuprofen."""
    return [
        snapshot('ph-1', 'City Care Pharmacy',
                 ('med-1-para', 'Paracetamol', 5.0, 10),
                 ('med-1-cet', 'Cetirizine', 3.5, 0)),
        snapshot('ph-2', 'Green Cross Chemists',
                 ('med-2-para', 'Paracetamol', 4.5, 2),
                 ('med-2-cet', 'Cetirizine', 3.0, 25)),
        snapshot('ph-3', 'Riverside Drugs',
                 ('med-3-ibu', 'Ibuprofen', 6.25, 8)),
    ]


@pytest.fixture
def address():
    return DeliveryAddress(street='123 Main St', city='Anytown', state='CA', zipCode='12345', country='USA')


@pytest.fixture
def channel():
    return BroadcastChannel(queue_size=50)


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def roster():
    return AgentRoster([
        DeliveryAgent(agentId=AGENT_A.actorId, name='Ravi Kumar', phone='+1-555-0101'),
        DeliveryAgent(agentId=AGENT_B.actorId, name='Maria Lopez'),
    ])


@pytest.fixture
def coordinator(store, channel, clock, roster):
    coordinator = OrderCoordinator(
        store, channel, assignment_timeout=300, clock=clock, schedule_timeouts=False, roster=roster)
    yield coordinator
    coordinator.shutdown()


@pytest.fixture
def workflow(coordinator, pharmacies, clock):
    return PrescriptionWorkflow(
        coordinator,
        inventory=FakeInventory(pharmacies),
        ocr=FakeOcr(['Paracetamol', 'paracetamol', 'Amoxicillin']),
        clock=clock,
    )


@pytest.fixture
def make_order(coordinator, pharmacies, address, clock):
    """Creates a pending order for CUSTOMER at ph-1 (2 x Paracetamol)."""
    def _make():
        result = create_selections_from_mentions(mentions('Paracetamol'), pharmacies, now=clock())
        result = result.model_copy(update={
            'selections': {'Paracetamol': result.selections['Paracetamol'].model_copy(update={'quantity': 2})},
        })
        draft = build_order_request(result, pharmacies, address, now=clock())
        return coordinator.create_order(draft, CUSTOMER.actorId)
    return _make


@pytest.fixture
def order_in(coordinator, make_order):
    """Creates an order and drives it to the requested status (assignment accepted by AGENT_A)."""
    path = [
        (OrderStatus.CONFIRMED, lambda o: coordinator.transition_order(o.id, 'confirm', PHARMACY)),
        (OrderStatus.PREPARING, lambda o: coordinator.transition_order(o.id, 'prepare', PHARMACY)),
        (OrderStatus.READY, lambda o: coordinator.transition_order(o.id, 'mark_ready', PHARMACY)),
        (OrderStatus.ASSIGNED, lambda o: coordinator.respond_to_assignment(
            coordinator.assign_delivery_agent(o.id, AGENT_A.actorId, PHARMACY).id, AGENT_A.actorId, True)),
        (OrderStatus.OUT_FOR_DELIVERY, lambda o: coordinator.transition_order(o.id, 'dispatch', AGENT_A)),
        (OrderStatus.DELIVERED, lambda o: coordinator.transition_order(o.id, 'deliver', AGENT_A)),
    ]

    def _order_in(status):
        order = make_order()
        if status == OrderStatus.PENDING:
            return order
        if status == OrderStatus.CANCELLED:
            return coordinator.transition_order(order.id, 'cancel', CUSTOMER)
        for reached, step in path:
            order = step(order)
            if reached == status:
                return order
        raise ValueError(status)
    return _order_in
