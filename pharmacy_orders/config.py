"""
config.py — Runtime Settings for the Pharmacy Order Service

All settings are read once from environment variables (with local defaults),
the same way container deployments inject service addresses.
"""

import os

# Service addresses
INVENTORY_SERVICE_URL = os.environ.get("INVENTORY_SERVICE_URL", "inventory_service:50051")
OCR_SERVICE_URL = os.environ.get("OCR_SERVICE_URL", "http://ocr_service:8002")
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "pharmacy")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "pharmacy")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.environ.get("LOG_FILE", "pharmacy_orders.log")

# Exchange / queue names
ORDER_EVENTS_EXCHANGE = "pharmacy.orders.events"
LOCATION_UPDATES_QUEUE = "delivery.location.updates"

# Delivery agent has this long to accept or reject a proposed assignment
ASSIGNMENT_TIMEOUT_SECONDS = float(os.environ.get("ASSIGNMENT_TIMEOUT_SECONDS", "300"))

# Matching results are valid for 3 minutes
MATCH_RESULT_TTL_SECONDS = float(os.environ.get("MATCH_RESULT_TTL_SECONDS", "180"))

# Delivery agent roster for local runs: "id:name[:phone],..."
DELIVERY_AGENTS = os.environ.get(
    "DELIVERY_AGENTS",
    "agent-001:Ravi Kumar:+1-555-0101,agent-002:Maria Lopez:+1-555-0102",
)

SUBSCRIBER_QUEUE_SIZE = int(os.environ.get("SUBSCRIBER_QUEUE_SIZE", "100"))

# "first_owner": first selection's pharmacy owns the order, mixed selections are logged.
# "strict": selections from more than one pharmacy are rejected.
MIXED_PHARMACY_POLICY = os.environ.get("MIXED_PHARMACY_POLICY", "first_owner")

EVENT_RELAY_ENABLED = os.environ.get("EVENT_RELAY_ENABLED", "true").lower() == "true"
LOCATION_LISTENER_ENABLED = os.environ.get("LOCATION_LISTENER_ENABLED", "true").lower() == "true"
