"""
main.py — FastAPI Entry Point for the Pharmacy Order Service

This module provides the REST and WebSocket interface used by the customer,
pharmacy and delivery-agent frontends.

Responsibilities:
    • Prescription upload, matching and selection edits (customer)
    • Order quote with confirm/cancel gate (customer)
    • Actor-gated order transitions, delivery assignment and location updates
    • Per-order realtime event stream over WebSocket
    • Start and stop the RabbitMQ event relay and location listener
    • Provide system health information

The authentication gateway in front of this service supplies the caller's identity
in the X-Actor-Id and X-Actor-Role headers.
"""

import asyncio
import threading
from typing import List, Optional

import grpc
import httpx
from fastapi import Depends, FastAPI, File, Form, Header, Request, UploadFile, WebSocket
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from . import config
from .broadcast import BroadcastChannel
from .clients import EventRelay, InventoryClient, OcrClient, start_location_listener
from .coordinator import OrderCoordinator
from .exceptions import NotFoundError, PharmacyOrderError
from .logging_config import get_logger, setup_logging
from .matching import pharmacy_options, update_selection
from .models import (
    Actor,
    ActorRole,
    AssignmentRequest,
    AssignmentResponseRequest,
    Coordinate,
    DeliveryAgentAvailability,
    MatchingResult,
    Order,
    OrderStatus,
    PharmacyOption,
    PharmacyOptionsRequest,
    QuoteRequest,
    QuoteResponse,
    TransitionRequest,
    UpdateSelectionRequest,
)
from .store import AgentRoster, InMemoryOrderStore
from .workflow import PrescriptionWorkflow

# Initialization
setup_logging()
log = get_logger(__name__)
app = FastAPI(title="Pharmacy Order Service")

_channel = BroadcastChannel()
_coordinator = OrderCoordinator(InMemoryOrderStore(), _channel, roster=AgentRoster.from_config())
_workflow = None
_relay = None


async def get_coordinator() -> OrderCoordinator:
    return _coordinator


def get_workflow() -> PrescriptionWorkflow:
    global _workflow
    if _workflow is None:
        _workflow = PrescriptionWorkflow(_coordinator, InventoryClient(), OcrClient())
    return _workflow


def get_actor(
        x_actor_id: str = Header(...),
        x_actor_role: ActorRole = Header(...),
) -> Actor:
    return Actor(actorId=x_actor_id, role=x_actor_role)


def require_role(actor: Actor, *roles: ActorRole):
    if actor.role not in roles:
        raise PharmacyOrderError(
            f"Role '{actor.role.value}' is not allowed here.",
            code='FORBIDDEN',
            http_status=403,
            detail={'allowedRoles': [r.value for r in roles]},
        )


# Error handling
@app.exception_handler(PharmacyOrderError)
async def pharmacy_order_error_handler(request: Request, exc: PharmacyOrderError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(grpc.RpcError)
async def inventory_unavailable_handler(request: Request, exc: grpc.RpcError):
    log.error(f"Inventory service unavailable while handling {request.url.path}")
    return JSONResponse(
        status_code=502,
        content={'type': 'error', 'code': 'INVENTORY_UNAVAILABLE', 'message': 'Inventory service unavailable.'},
    )


@app.exception_handler(httpx.HTTPError)
async def ocr_unavailable_handler(request: Request, exc: httpx.HTTPError):
    log.error(f"OCR service failed while handling {request.url.path}: {exc}")
    return JSONResponse(
        status_code=502,
        content={'type': 'error', 'code': 'OCR_UNAVAILABLE', 'message': 'Failed to process prescription.'},
    )


# Startup / Shutdown: MQ relay and location listener
@app.on_event("startup")
def on_startup():
    """
    Starts the RabbitMQ event relay and the delivery location listener thread.
    Both run as daemons and stop automatically when the app terminates.
    """
    global _relay
    log.info("Pharmacy order service starting...")
    if config.EVENT_RELAY_ENABLED:
        _relay = EventRelay()
        _relay.start()
        _channel.add_relay(_relay)
    if config.LOCATION_LISTENER_ENABLED:
        listener_thread = threading.Thread(target=start_location_listener, args=(_coordinator,), daemon=True)
        listener_thread.start()
        log.info("Location listener thread started.")


@app.on_event("shutdown")
def on_shutdown():
    _coordinator.shutdown()
    if _relay is not None:
        _relay.close()


# --- Prescription & selections (customer) ---

@app.post("/v1/prescriptions", response_model=MatchingResult)
def upload_prescription(
        prescription: UploadFile = File(...),
        pharmacyIds: Optional[str] = Form(None),
        actor: Actor = Depends(get_actor),
        workflow: PrescriptionWorkflow = Depends(get_workflow),
):
    """
    Reads the prescription image, matches its medicines to partner pharmacy stock and
    returns the selection model. The client keeps the result and posts it back for
    edits and the quote; it expires after a few minutes.
    """
    require_role(actor, ActorRole.CUSTOMER)
    pharmacy_ids = [p.strip() for p in (pharmacyIds or "").split(",") if p.strip()]
    image = prescription.file.read()
    return workflow.match_prescription(
        image,
        filename=prescription.filename or "prescription",
        content_type=prescription.content_type or "application/octet-stream",
        pharmacy_ids=pharmacy_ids,
    )


@app.post("/v1/selections", response_model=MatchingResult)
def change_selection(body: UpdateSelectionRequest, workflow: PrescriptionWorkflow = Depends(get_workflow)):
    result = workflow.trusted_result(body.result)
    return update_selection(result, body.drugName, pharmacy_id=body.pharmacyId, quantity=body.quantity)


@app.post("/v1/selections/options", response_model=List[PharmacyOption])
def selection_options(body: PharmacyOptionsRequest, workflow: PrescriptionWorkflow = Depends(get_workflow)):
    return pharmacy_options(workflow.trusted_result(body.result), body.drugName)


# --- Quote & confirmation gate (customer) ---

@app.post("/v1/orders/quote", response_model=QuoteResponse)
def quote_order(
        body: QuoteRequest,
        actor: Actor = Depends(get_actor),
        workflow: PrescriptionWorkflow = Depends(get_workflow),
):
    require_role(actor, ActorRole.CUSTOMER)
    submission = workflow.prepare_submission(body.result, body.deliveryAddress, body.paymentMethod, actor.actorId)
    return QuoteResponse(
        submissionId=submission.id,
        request=submission.draft.request,
        summary=submission.summary,
        lineItems=list(submission.draft.lineItems),
    )


@app.post("/v1/orders/quote/{submission_id}/confirm", response_model=Order, status_code=201)
def confirm_quote(
        submission_id: str,
        actor: Actor = Depends(get_actor),
        workflow: PrescriptionWorkflow = Depends(get_workflow),
):
    require_role(actor, ActorRole.CUSTOMER)
    return workflow.confirm_submission(submission_id, actor.actorId)


@app.post("/v1/orders/quote/{submission_id}/cancel")
def cancel_quote(
        submission_id: str,
        actor: Actor = Depends(get_actor),
        workflow: PrescriptionWorkflow = Depends(get_workflow),
):
    require_role(actor, ActorRole.CUSTOMER)
    workflow.cancel_submission(submission_id, actor.actorId)
    return {"submissionId": submission_id, "status": "cancelled"}


# --- Orders ---

@app.get("/v1/orders", response_model=List[Order])
def list_orders(
        status: Optional[OrderStatus] = None,
        actor: Actor = Depends(get_actor),
        coordinator: OrderCoordinator = Depends(get_coordinator),
):
    return coordinator.list_orders(actor, status=status)


@app.get("/v1/delivery-agents", response_model=List[DeliveryAgentAvailability])
def list_delivery_agents(
        actor: Actor = Depends(get_actor),
        coordinator: OrderCoordinator = Depends(get_coordinator),
):
    """Roster with availability, for the pharmacy choosing whom to assign."""
    require_role(actor, ActorRole.PHARMACY)
    return coordinator.available_delivery_agents()


@app.get("/v1/orders/{order_id}", response_model=Order)
def get_order(order_id: str, coordinator: OrderCoordinator = Depends(get_coordinator)):
    return coordinator.get_order(order_id)


@app.post("/v1/orders/{order_id}/transitions", response_model=Order)
def transition_order(
        order_id: str,
        body: TransitionRequest,
        actor: Actor = Depends(get_actor),
        coordinator: OrderCoordinator = Depends(get_coordinator),
):
    return coordinator.transition_order(order_id, body.action, actor)


@app.post("/v1/orders/{order_id}/assignment", response_model=Order)
def assign_delivery_agent(
        order_id: str,
        body: AssignmentRequest,
        actor: Actor = Depends(get_actor),
        coordinator: OrderCoordinator = Depends(get_coordinator),
):
    return coordinator.assign_delivery_agent(order_id, body.agentId, actor)


@app.post("/v1/orders/{order_id}/assignment/response", response_model=Order)
def respond_to_assignment(
        order_id: str,
        body: AssignmentResponseRequest,
        actor: Actor = Depends(get_actor),
        coordinator: OrderCoordinator = Depends(get_coordinator),
):
    require_role(actor, ActorRole.DELIVERY_AGENT)
    return coordinator.respond_to_assignment(order_id, actor.actorId, body.accept)


@app.put("/v1/orders/{order_id}/location", response_model=Order)
def update_location(
        order_id: str,
        body: Coordinate,
        actor: Actor = Depends(get_actor),
        coordinator: OrderCoordinator = Depends(get_coordinator),
):
    require_role(actor, ActorRole.DELIVERY_AGENT)
    return coordinator.update_delivery_location(order_id, body, agent_id=actor.actorId)


# --- Realtime ---

@app.websocket("/v1/orders/{order_id}/events")
async def order_events(websocket: WebSocket, order_id: str,
                       coordinator: OrderCoordinator = Depends(get_coordinator)):
    """
    Streams an order's events. The first message is the current order snapshot;
    there is no replay, so clients reconnecting must rely on that snapshot.
    """
    await websocket.accept()
    loop = asyncio.get_running_loop()
    with coordinator.channel.subscribe(order_id, loop=loop) as subscription:
        try:
            order = coordinator.get_order(order_id)
        except NotFoundError as e:
            await websocket.close(code=4404, reason=e.message)
            return
        await websocket.send_json({"type": "snapshot", "orderId": order_id, "order": jsonable_encoder(order)})

        async def forward():
            while True:
                event = await subscription.next_event()
                await websocket.send_text(event.model_dump_json())

        async def wait_for_disconnect():
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return

        tasks = [asyncio.create_task(forward()), asyncio.create_task(wait_for_disconnect())]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            if task.exception() is not None:
                log.info(f"[Order: {order_id}] Event stream closed: {task.exception()!r}")


# Health Check Endpoint
@app.get("/health")
def health_check():
    """
    Simple health check endpoint for monitoring systems and container orchestrators.
    """
    return {"status": "ok"}
