"""
This module provides communication clients for the external systems used by the pharmacy order service:
- Inventory Service (gRPC, JSON-encoded messages)
- OCR Service (REST API)
- Order event exchange and delivery-agent location feed (RabbitMQ)
Each class encapsulates its protocol logic, error handling, and connection management.
"""

import json
import logging
import queue
import threading
import time

import grpc
import httpx
import pika
from pydantic import ValidationError as PydanticValidationError

from . import config
from .exceptions import PharmacyOrderError
from .models import Coordinate, ExtractedDrugMention, PharmacyInventorySnapshot

log = logging.getLogger(__name__)

INVENTORY_SERVICE_NAME = "pharmacy.inventory.InventoryService"
GET_PHARMACY_STOCK_METHOD = f"/{INVENTORY_SERVICE_NAME}/GetPharmacyStock"


def json_serializer(message) -> bytes:
    return json.dumps(message).encode("utf-8")


def json_deserializer(data: bytes):
    return json.loads(data.decode("utf-8"))


# --- Inventory Client (gRPC) ---
class InventoryClient:
    """
    Client for the Inventory Service (gRPC).
    Fetches per-pharmacy stock and prices for the matching engine and the submission validator.
    """
    def __init__(self, target: str = None, timeout: float = 5.0):
        """
        Initializes the gRPC channel and the GetPharmacyStock call.
        """
        self.timeout = timeout
        self.channel = grpc.insecure_channel(target or config.INVENTORY_SERVICE_URL)
        self._get_pharmacy_stock = self.channel.unary_unary(
            GET_PHARMACY_STOCK_METHOD,
            request_serializer=json_serializer,
            response_deserializer=json_deserializer,
        )

    def close(self):
        """Closes the gRPC channel."""
        self.channel.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def get_pharmacy_stock(self, pharmacy_ids) -> list:
        """
        Fetches inventory snapshots for the given pharmacies.
        Args:
            pharmacy_ids (list): Pharmacy ids in preference order. Empty means all partner pharmacies.
        Returns:
            list[PharmacyInventorySnapshot]: One snapshot per known pharmacy, in the order returned by the service.
        Raises:
            grpc.RpcError: If the gRPC call fails or times out.
        """
        request = {"pharmacyIds": list(pharmacy_ids or [])}
        try:
            response = self._get_pharmacy_stock(request, timeout=self.timeout)
        except grpc.RpcError as e:
            log.error(f"gRPC call to inventory service failed: {e.code()} - {e.details()}")
            raise
        return [PharmacyInventorySnapshot.model_validate(p) for p in response.get("pharmacies", [])]


# --- OCR Client (REST) ---
class OcrClient:
    """
    Client for the OCR Service (REST API).
    Extracts the prescription text and the drug names mentioned in it.
    """
    def __init__(self, base_url: str = None, client: httpx.Client = None):
        """
        Initializes the HTTP client with proper timeout configuration.
        OCR is slow, so the read timeout is generous.
        """
        if client is None:
            timeout_config = httpx.Timeout(5.0, read=30.0)
            client = httpx.Client(base_url=base_url or config.OCR_SERVICE_URL, timeout=timeout_config)
        self.client = client

    def close(self):
        """Closes the HTTP client session."""
        self.client.close()

    def extract_drug_mentions(self, image: bytes, filename: str = "prescription.png",
                              content_type: str = "image/png"):
        """
        Uploads a prescription image for text extraction.
        Args:
            image (bytes): Raw image content.
            filename (str): Original file name.
            content_type (str): MIME type of the image.
        Returns:
            tuple[str, list[ExtractedDrugMention]]: Extracted text and drug mentions (may contain duplicates).
        Raises:
            httpx.TimeoutException: If the service does not respond within the timeout.
            httpx.HTTPStatusError: If the service returns an error status (4xx or 5xx).
        """
        files = {"prescription": (filename, image, content_type)}
        try:
            response = self.client.post("/v1/extract", files=files)
            response.raise_for_status()
        except httpx.TimeoutException:
            log.error(f"OCR service timed out for {filename}.")
            raise
        except httpx.HTTPStatusError as e:
            log.error(f"OCR service rejected {filename}: HTTP {e.response.status_code}")
            raise

        data = response.json()
        mentions = [ExtractedDrugMention(name=m["name"]) for m in data.get("medicines", []) if m.get("name")]
        return data.get("text", ""), mentions


# --- Order Event Relay (MQ Publisher) ---
def rabbitmq_connection():
    """
    Establishes a RabbitMQ connection using the configured credentials.
    Raises:
        pika.exceptions.AMQPConnectionError: If the connection fails.
    """
    credentials = pika.PlainCredentials(config.RABBITMQ_USER, config.RABBITMQ_PASSWORD)
    return pika.BlockingConnection(
        pika.ConnectionParameters(host=config.RABBITMQ_HOST, credentials=credentials, heartbeat=60)
    )


_STOP = object()


class EventRelay:
    """
    Mirrors order events onto the RabbitMQ topic exchange so other services can follow orders.

    Events are queued and published from a background thread; calling the relay never
    blocks the coordinator. Routing key: order.<orderId>.<eventType>
    """
    def __init__(self, exchange: str = config.ORDER_EVENTS_EXCHANGE, connection_factory=None):
        self.exchange = exchange
        self.connection = None
        self.channel = None
        self._connection_factory = connection_factory or rabbitmq_connection
        self._events = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="order-event-relay", daemon=True)

    def start(self):
        self._thread.start()
        log.info("Order event relay started.")

    def __call__(self, event):
        self._events.put_nowait(event)

    def _connect(self):
        self.connection = self._connection_factory()
        self.channel = self.connection.channel()
        self.channel.exchange_declare(exchange=self.exchange, exchange_type='topic', durable=True)
        log.info("Order event relay connected to RabbitMQ.")

    def publish(self, event):
        """
        Publishes one event, reconnecting first if needed.
        Raises:
            pika.exceptions.AMQPError: If publishing fails.
        """
        if not self.connection or self.connection.is_closed:
            self._connect()
        self.channel.basic_publish(
            exchange=self.exchange,
            routing_key=f"order.{event.orderId}.{event.type}",
            body=event.model_dump_json(),
            properties=pika.BasicProperties(content_type='application/json', delivery_mode=2),
        )

    def _run(self):
        while True:
            event = self._events.get()
            if event is _STOP:
                break
            try:
                self.publish(event)
            except pika.exceptions.AMQPError as e:
                # at-most-once: the event is dropped, the next one reconnects
                log.error(f"[Order: {event.orderId}] Could not relay {event.type} to RabbitMQ: {e}")
                self.connection = None

    def close(self, timeout: float = 5.0):
        if self._thread.is_alive():
            self._events.put_nowait(_STOP)
            self._thread.join(timeout)
        if self.connection and self.connection.is_open:
            self.connection.close()


# --- Delivery Location Listener (MQ Consumer) ---
def apply_location_message(coordinator, body) -> bool:
    """
    Applies one GPS fix from a delivery agent.

    Message: {"orderId": str, "agentId": str, "lat": float, "lng": float}

    Returns:
        bool: False if the message is malformed (should be dead-lettered), True otherwise.
        Updates rejected by the coordinator (wrong status, wrong agent) are logged and
        still acknowledged, since retrying them cannot succeed.
    """
    try:
        data = json.loads(body)
        order_id = data["orderId"]
        location = Coordinate(lat=data["lat"], lng=data["lng"])
    except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, PydanticValidationError):
        log.error(f"[LOCATION] Invalid location message received: {body!r}")
        return False

    try:
        coordinator.update_delivery_location(order_id, location, agent_id=data.get("agentId"))
    except PharmacyOrderError as e:
        log.warning(f"[LOCATION][Order: {order_id}] Update rejected: {e.message}")
    return True


def start_location_listener(coordinator, queue_name: str = config.LOCATION_UPDATES_QUEUE):
    """
    Consumes delivery-agent location updates and applies them to their orders.
    On connection loss or errors, it attempts automatic reconnection after 10 seconds.
    """
    log.info("Location listener thread starting...")
    while True:
        try:
            connection = rabbitmq_connection()
            channel = connection.channel()
            channel.queue_declare(queue=queue_name)

            def callback(ch, method, properties, body):
                if apply_location_message(coordinator, body):
                    ch.basic_ack(delivery_tag=method.delivery_tag)
                else:
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)  # -> DLQ

            log.info("[LOCATION] Listener is consuming location updates.")
            channel.basic_consume(queue=queue_name, on_message_callback=callback)
            channel.start_consuming()

        except pika.exceptions.AMQPConnectionError:
            log.warning("Location listener: lost connection to RabbitMQ. Reconnecting in 10s...")
            time.sleep(10)
        except Exception as e:
            log.error(f"Location listener: unexpected error {e}. Restarting in 10s.")
            time.sleep(10)
