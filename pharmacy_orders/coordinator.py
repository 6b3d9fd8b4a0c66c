"""
coordinator.py — Order Lifecycle Coordinator

Owns the order state machine:

    pending → confirmed → preparing → ready → assigned → out_for_delivery → delivered
                         (any non-terminal status) → cancelled

Assigning a delivery agent moves a ready order to `assigned` with the assignment
in the `pending_acceptance` sub-state. The agent accepts (assignment becomes
active) or rejects (order returns to an unassigned `ready`). An unanswered
proposal times out and reverts the same way.

Every operation on one order runs inside that order's lock, so a transition reads,
validates and writes atomically. Events are published while the lock is held, which
keeps per-order event order equal to history order; publishing itself never blocks.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from . import config
from .broadcast import BroadcastChannel
from .exceptions import (
    AssignmentInProgressError,
    InvalidTransitionError,
    ValidationError,
)
from .models import (
    Actor,
    ActorRole,
    AssignmentState,
    Coordinate,
    DeliveryAgentAvailability,
    DeliveryAssignment,
    LocationUpdatedEvent,
    Order,
    OrderDraft,
    OrderStatus,
    StatusChangedEvent,
    StatusHistoryEntry,
)
from .store import AgentRoster, OrderStore

log = logging.getLogger(__name__)


class TransitionRule:
    def __init__(self, sources, target, roles):
        self.sources = frozenset(sources)
        self.target = target
        self.roles = frozenset(roles)


NON_TERMINAL = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.ASSIGNED,
    OrderStatus.OUT_FOR_DELIVERY,
]

TRANSITIONS = {
    "confirm": TransitionRule([OrderStatus.PENDING], OrderStatus.CONFIRMED, [ActorRole.PHARMACY]),
    "prepare": TransitionRule([OrderStatus.CONFIRMED], OrderStatus.PREPARING, [ActorRole.PHARMACY]),
    "mark_ready": TransitionRule([OrderStatus.PREPARING], OrderStatus.READY, [ActorRole.PHARMACY]),
    "dispatch": TransitionRule([OrderStatus.ASSIGNED], OrderStatus.OUT_FOR_DELIVERY, [ActorRole.DELIVERY_AGENT]),
    "deliver": TransitionRule([OrderStatus.OUT_FOR_DELIVERY], OrderStatus.DELIVERED, [ActorRole.DELIVERY_AGENT]),
    "cancel": TransitionRule(NON_TERMINAL, OrderStatus.CANCELLED, [ActorRole.PHARMACY, ActorRole.CUSTOMER]),
}

TRACKABLE_STATUSES = frozenset({OrderStatus.ASSIGNED, OrderStatus.OUT_FOR_DELIVERY})


def _utcnow():
    return datetime.now(timezone.utc)


class OrderCoordinator:
    """
    Single writer of order state.

    Args:
        store: Persistent order store.
        channel: Broadcast channel the coordinator publishes on.
        assignment_timeout: Seconds a delivery agent has to answer a proposal.
        clock: Returns the current time (UTC).
        schedule_timeouts: Start a timer per proposal; when False, timeouts are only
            applied by expire_stale_assignments().
        roster: Known delivery agents. When given, proposals to agents not on it are refused.
    """

    def __init__(
            self,
            store: OrderStore,
            channel: BroadcastChannel,
            assignment_timeout: float = config.ASSIGNMENT_TIMEOUT_SECONDS,
            clock: Callable[[], datetime] = _utcnow,
            schedule_timeouts: bool = True,
            roster: Optional[AgentRoster] = None,
    ):
        self.store = store
        self.channel = channel
        self.assignment_timeout = assignment_timeout
        self.clock = clock
        self.schedule_timeouts = schedule_timeouts
        self.roster = roster
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._timers: Dict[str, threading.Timer] = {}

    def _lock(self, order_id: str) -> threading.RLock:
        """
        Per-order lock, created on first use of an existing order.

        Unknown ids raise NotFoundError without leaving an entry behind; terminal
        orders get a throwaway lock.
        """
        with self._locks_guard:
            lock = self._locks.get(order_id)
            if lock is not None:
                return lock
        if self.store.get_order(order_id).is_terminal:
            return threading.RLock()
        with self._locks_guard:
            return self._locks.setdefault(order_id, threading.RLock())

    def _release_lock(self, order_id: str):
        # terminal orders are immutable
        with self._locks_guard:
            self._locks.pop(order_id, None)

    # --- creation & reads ---

    def create_order(self, draft: OrderDraft, customer_id: str) -> Order:
        """Creates the order in status 'pending' with prices bound from the draft."""
        order = self.store.create_order(draft.request, customer_id, list(draft.lineItems))
        log.info(
            f"[Order: {order.id}] Created for customer {customer_id} at pharmacy {order.pharmacyId} "
            f"({len(order.items)} items, total {order.totalAmount:.2f})."
        )
        return order

    def get_order(self, order_id: str) -> Order:
        return self.store.get_order(order_id)

    def list_orders(self, actor: Actor, status: Optional[OrderStatus] = None):
        """Orders visible to the actor: a pharmacy's orders, a customer's orders, an agent's deliveries."""
        filters = {}
        if actor.role == ActorRole.PHARMACY:
            filters['pharmacy_id'] = actor.actorId
        elif actor.role == ActorRole.CUSTOMER:
            filters['customer_id'] = actor.actorId
        elif actor.role == ActorRole.DELIVERY_AGENT:
            filters['delivery_agent_id'] = actor.actorId
        return self.store.list_orders(status=status, **filters)

    def available_delivery_agents(self):
        """
        The roster as seen by a pharmacy choosing whom to assign.

        An agent is unavailable while proposed for, or carrying, an order that is
        assigned or out for delivery.
        """
        if self.roster is None:
            return []

        busy = {}
        for status in TRACKABLE_STATUSES:
            for order in self.store.list_orders(status=status):
                agent_id = order.deliveryAgentId or (order.assignment.agentId if order.assignment else None)
                if agent_id is not None:
                    busy[agent_id] = order.id

        return [
            DeliveryAgentAvailability(
                **agent.model_dump(),
                available=agent.agentId not in busy,
                activeOrderId=busy.get(agent.agentId),
            )
            for agent in self.roster.list_agents()
        ]

    # --- helpers ---

    @staticmethod
    def _reject(order: Order, message: str, **detail):
        detail.update({'orderId': order.id, 'status': order.status.value})
        raise InvalidTransitionError(message, detail=detail)

    def _check_owner(self, order: Order, actor: Actor):
        if actor.role == ActorRole.PHARMACY and actor.actorId != order.pharmacyId:
            self._reject(order, f"Pharmacy {actor.actorId} does not own order {order.id}.")
        if actor.role == ActorRole.CUSTOMER and actor.actorId != order.customerId:
            self._reject(order, f"Customer {actor.actorId} did not place order {order.id}.")
        if actor.role == ActorRole.DELIVERY_AGENT and actor.actorId != order.deliveryAgentId:
            self._reject(order, f"Delivery agent {actor.actorId} is not assigned to order {order.id}.")

    def _record(self, order: Order, status: OrderStatus, actor_id: Optional[str],
                note: Optional[str] = None, **changes) -> Order:
        entry = StatusHistoryEntry(status=status, timestamp=self.clock(), actorId=actor_id, note=note)
        updated = self.store.append_status_history(order.id, entry, **changes)
        self._publish_status(updated)
        return updated

    def _publish_status(self, order: Order):
        self.channel.publish(StatusChangedEvent(
            orderId=order.id,
            status=order.status,
            order=order,
            occurredAt=self.clock(),
        ))

    def _cancel_timer(self, order_id: str):
        timer = self._timers.pop(order_id, None)
        if timer is not None:
            timer.cancel()

    # --- transitions ---

    def transition_order(self, order_id: str, action: str, actor: Actor) -> Order:
        """
        Applies a named transition on behalf of an actor.

        Raises:
            ValidationError: Unknown action.
            NotFoundError: Unknown order.
            InvalidTransitionError: Wrong role, not the order's owner/agent, or the
                current status does not allow the action. The order is left unchanged.
        """
        rule = TRANSITIONS.get(action)
        if rule is None:
            raise ValidationError(
                f"Unknown action '{action}'. Expected one of: {', '.join(TRANSITIONS)}.",
                code='UNKNOWN_ACTION',
                detail={'action': action},
            )

        with self._lock(order_id):
            order = self.store.get_order(order_id)
            if actor.role not in rule.roles:
                self._reject(
                    order,
                    f"Role '{actor.role.value}' may not '{action}' an order.",
                    action=action, role=actor.role.value,
                )
            if order.status not in rule.sources:
                self._reject(
                    order,
                    f"Cannot '{action}' order {order.id} in status '{order.status.value}'.",
                    action=action,
                )
            self._check_owner(order, actor)

            changes = {}
            if action == "dispatch" and order.awaiting_acceptance:
                self._reject(
                    order,
                    f"Delivery agent has not accepted order {order.id} yet.",
                    action=action,
                )
            if action == "cancel" and order.awaiting_acceptance:
                self._cancel_timer(order.id)
                changes['assignment'] = None

            updated = self._record(order, rule.target, actor.actorId, **changes)
            log.info(
                f"[Order: {order_id}] {order.status.value} -> {updated.status.value} "
                f"by {actor.role.value} {actor.actorId}."
            )
            if updated.is_terminal:
                self._release_lock(order_id)
            return updated

    def assign_delivery_agent(self, order_id: str, agent_id: str, actor: Actor) -> Order:
        """
        Proposes a delivery agent for a ready order (ready → assigned, pending acceptance).

        Raises:
            AssignmentInProgressError: Another proposal is still awaiting an answer.
            InvalidTransitionError: Not the owning pharmacy, or the order is not ready
                or already has an active delivery agent.
        """
        if not agent_id:
            raise ValidationError("A delivery agent id is required.", code='AGENT_REQUIRED')
        if self.roster is not None:
            self.roster.get(agent_id)

        with self._lock(order_id):
            order = self.store.get_order(order_id)
            if actor.role != ActorRole.PHARMACY:
                self._reject(order, f"Role '{actor.role.value}' may not assign delivery agents.")
            self._check_owner(order, actor)
            if order.awaiting_acceptance:
                raise AssignmentInProgressError(
                    f"Order {order.id} is awaiting a response from delivery agent "
                    f"{order.assignment.agentId}.",
                    detail={'orderId': order.id, 'pendingAgentId': order.assignment.agentId},
                )
            if order.status != OrderStatus.READY:
                self._reject(order, f"Order {order.id} must be 'ready' to assign a delivery agent.")
            if order.deliveryAgentId is not None:
                self._reject(
                    order,
                    f"Order {order.id} already has delivery agent {order.deliveryAgentId}.",
                )

            now = self.clock()
            assignment = DeliveryAssignment(
                agentId=agent_id,
                proposedAt=now,
                expiresAt=now + timedelta(seconds=self.assignment_timeout),
            )
            updated = self._record(
                order, OrderStatus.ASSIGNED, actor.actorId,
                note=f"proposed to delivery agent {agent_id}",
                assignment=assignment,
            )
            self._schedule_timeout(order_id, assignment)
            log.info(f"[Order: {order_id}] Delivery agent {agent_id} proposed, awaiting acceptance.")
            return updated

    def respond_to_assignment(self, order_id: str, agent_id: str, accept: bool) -> Order:
        """
        The proposed agent accepts (assignment becomes active) or rejects
        (order returns to an unassigned 'ready').
        """
        with self._lock(order_id):
            order = self.store.get_order(order_id)
            if not order.awaiting_acceptance:
                self._reject(order, f"Order {order.id} has no assignment awaiting acceptance.")
            if order.assignment.agentId != agent_id:
                self._reject(
                    order,
                    f"Order {order.id} was proposed to agent {order.assignment.agentId}, not {agent_id}.",
                )

            self._cancel_timer(order_id)
            if accept:
                assignment = order.assignment.model_copy(update={
                    'state': AssignmentState.ACCEPTED,
                    'respondedAt': self.clock(),
                })
                updated = self.store.update_assignment(order_id, assignment, agent_id)
                self._publish_status(updated)
                log.info(f"[Order: {order_id}] Delivery agent {agent_id} accepted.")
                return updated

            updated = self._record(
                order, OrderStatus.READY, agent_id,
                note=f"rejected by delivery agent {agent_id}",
                assignment=None, deliveryAgentId=None,
            )
            log.info(f"[Order: {order_id}] Delivery agent {agent_id} rejected; order is ready again.")
            return updated

    def update_delivery_location(self, order_id: str, location: Coordinate,
                                 agent_id: Optional[str] = None) -> Order:
        """Stores the last known coordinate while the order is assigned or out for delivery."""
        with self._lock(order_id):
            order = self.store.get_order(order_id)
            if order.status not in TRACKABLE_STATUSES:
                self._reject(
                    order,
                    f"Location updates need status 'assigned' or 'out_for_delivery', "
                    f"order {order.id} is '{order.status.value}'.",
                )
            if agent_id is not None:
                current = order.deliveryAgentId or order.assignment.agentId
                if agent_id != current:
                    self._reject(order, f"Delivery agent {agent_id} is not assigned to order {order.id}.")

            updated = self.store.set_tracking_location(order_id, location)
            self.channel.publish(LocationUpdatedEvent(
                orderId=order_id,
                location=location,
                occurredAt=self.clock(),
            ))
            return updated

    # --- pending_acceptance timeout ---

    def _schedule_timeout(self, order_id: str, assignment: DeliveryAssignment):
        if not self.schedule_timeouts:
            return
        self._cancel_timer(order_id)
        timer = threading.Timer(
            self.assignment_timeout, self._expire_assignment,
            args=(order_id, assignment.agentId, assignment.proposedAt),
        )
        timer.daemon = True
        self._timers[order_id] = timer
        timer.start()

    def _expire_assignment(self, order_id: str, agent_id: str, proposed_at: datetime,
                           force: bool = True) -> Optional[Order]:
        with self._lock(order_id):
            order = self.store.get_order(order_id)
            assignment = order.assignment
            if (not order.awaiting_acceptance
                    or assignment.agentId != agent_id
                    or assignment.proposedAt != proposed_at):
                return None
            if not force and self.clock() < assignment.expiresAt:
                return None

            self._cancel_timer(order_id)
            updated = self._record(
                order, OrderStatus.READY, None,
                note=f"assignment to delivery agent {agent_id} timed out",
                assignment=None, deliveryAgentId=None,
            )
            log.warning(f"[Order: {order_id}] Delivery agent {agent_id} did not respond; order is ready again.")
            return updated

    def expire_stale_assignments(self):
        """Reverts every overdue pending_acceptance assignment; returns the reverted orders."""
        expired = []
        for order in self.store.list_orders(status=OrderStatus.ASSIGNED):
            if not order.awaiting_acceptance:
                continue
            reverted = self._expire_assignment(
                order.id, order.assignment.agentId, order.assignment.proposedAt, force=False,
            )
            if reverted is not None:
                expired.append(reverted)
        return expired

    def shutdown(self):
        for order_id in list(self._timers):
            self._cancel_timer(order_id)
