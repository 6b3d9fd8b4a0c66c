"""
store.py — Order Store Interface and In-Memory Implementation

The coordinator reads and writes orders only through OrderStore. The durable
store used in production lives outside this service; InMemoryOrderStore backs
local runs and tests.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from . import config
from .exceptions import NotFoundError
from .models import (
    Coordinate,
    DeliveryAgent,
    DeliveryAssignment,
    Order,
    OrderCreationRequest,
    OrderLineItem,
    OrderStatus,
    StatusHistoryEntry,
)


class OrderStore(ABC):

    @abstractmethod
    def create_order(self, request: OrderCreationRequest, customer_id: str,
                     line_items: List[OrderLineItem]) -> Order:
        """Persists a new order in status 'pending'; the store computes the total."""

    @abstractmethod
    def get_order(self, order_id: str) -> Order:
        """Raises NotFoundError for unknown ids."""

    @abstractmethod
    def append_status_history(self, order_id: str, entry: StatusHistoryEntry, **changes) -> Order:
        """Sets status to entry.status, appends the entry and applies the field changes atomically."""

    @abstractmethod
    def update_assignment(self, order_id: str, assignment: Optional[DeliveryAssignment],
                          delivery_agent_id: Optional[str]) -> Order:
        pass

    @abstractmethod
    def set_tracking_location(self, order_id: str, location: Coordinate) -> Order:
        pass

    @abstractmethod
    def list_orders(self, pharmacy_id: Optional[str] = None, customer_id: Optional[str] = None,
                    delivery_agent_id: Optional[str] = None,
                    status: Optional[OrderStatus] = None) -> List[Order]:
        pass


class InMemoryOrderStore(OrderStore):
    """Thread-safe dict-backed store. Every read returns a deep copy."""

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _now():
        return datetime.now(timezone.utc)

    def _get(self, order_id):
        try:
            return self._orders[order_id]
        except KeyError:
            raise NotFoundError(
                f"Order {order_id} not found.",
                code='ORDER_NOT_FOUND',
                detail={'orderId': order_id},
            )

    def _replace(self, order_id, **changes):
        changes['updatedAt'] = self._now()
        updated = self._get(order_id).model_copy(update=changes, deep=True)
        self._orders[order_id] = updated
        return updated.model_copy(deep=True)

    def create_order(self, request, customer_id, line_items):
        now = self._now()
        order = Order(
            id=str(uuid.uuid4()),
            pharmacyId=request.pharmacyId,
            customerId=customer_id,
            items=list(line_items),
            totalAmount=round(sum(item.unitPrice * item.quantity for item in line_items), 2),
            deliveryAddress=request.deliveryAddress,
            paymentMethod=request.paymentMethod,
            createdAt=now,
            updatedAt=now,
        )
        with self._lock:
            self._orders[order.id] = order
        return order.model_copy(deep=True)

    def get_order(self, order_id):
        with self._lock:
            return self._get(order_id).model_copy(deep=True)

    def append_status_history(self, order_id, entry, **changes):
        with self._lock:
            history = list(self._get(order_id).statusHistory) + [entry]
            return self._replace(order_id, status=entry.status, statusHistory=history, **changes)

    def update_assignment(self, order_id, assignment, delivery_agent_id):
        with self._lock:
            return self._replace(order_id, assignment=assignment, deliveryAgentId=delivery_agent_id)

    def set_tracking_location(self, order_id, location):
        with self._lock:
            return self._replace(order_id, trackingLocation=location)

    def list_orders(self, pharmacy_id=None, customer_id=None, delivery_agent_id=None, status=None):
        with self._lock:
            orders = list(self._orders.values())
        result = []
        for order in orders:
            if pharmacy_id is not None and order.pharmacyId != pharmacy_id:
                continue
            if customer_id is not None and order.customerId != customer_id:
                continue
            if delivery_agent_id is not None:
                proposed = order.assignment.agentId if order.assignment else None
                if delivery_agent_id not in (order.deliveryAgentId, proposed):
                    continue
            if status is not None and order.status != status:
                continue
            result.append(order.model_copy(deep=True))
        result.sort(key=lambda o: o.createdAt, reverse=True)
        return result


class AgentRoster:
    """Delivery agents partnered with the service, keyed by agent id."""

    def __init__(self, agents=()):
        self._agents: Dict[str, DeliveryAgent] = {a.agentId: a for a in agents}

    @classmethod
    def from_config(cls, value: str = config.DELIVERY_AGENTS) -> "AgentRoster":
        """Parses "id:name[:phone],id:name[:phone]"; entries without a name are skipped."""
        agents = []
        for entry in value.split(","):
            parts = [p.strip() for p in entry.split(":")]
            if len(parts) < 2 or not parts[0] or not parts[1]:
                continue
            agents.append(DeliveryAgent(agentId=parts[0], name=parts[1], phone=parts[2] if len(parts) > 2 else ""))
        return cls(agents)

    def get(self, agent_id: str) -> DeliveryAgent:
        try:
            return self._agents[agent_id]
        except KeyError:
            raise NotFoundError(
                f"Delivery agent {agent_id} is not on the roster.",
                code='AGENT_NOT_FOUND',
                detail={'agentId': agent_id},
            )

    def list_agents(self) -> List[DeliveryAgent]:
        return list(self._agents.values())
