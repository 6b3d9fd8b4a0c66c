"""
mock_inventory_service.py — Mock Implementation of the Inventory Service (gRPC)

This module provides a simulated Inventory Service for local runs of the pharmacy
order service. It serves the same JSON-encoded GetPharmacyStock call the
InventoryClient uses, without relying on a real pharmacy backend.

The mock simulates common inventory situations:
    • A medicine stocked by several pharmacies at different prices
    • A medicine listed but out of stock (stockQuantity 0)
    • A medicine no partner pharmacy carries
    • Unknown pharmacy ids (silently skipped)

Port:
    Default: 50051 (gRPC)
"""

import logging
from concurrent import futures

import grpc

from pharmacy_orders.clients import INVENTORY_SERVICE_NAME, json_deserializer, json_serializer

logging.basicConfig(level=logging.INFO)

CATALOG = [
    {
        "pharmacyId": "ph-001",
        "pharmacyName": "City Care Pharmacy",
        "stockItems": [
            {"medicineId": "med-001-para", "medicineName": "Paracetamol", "unitPrice": 5.0, "stockQuantity": 10},
            {"medicineId": "med-001-cet", "medicineName": "Cetirizine", "unitPrice": 3.5, "stockQuantity": 0},
        ],
    },
    {
        "pharmacyId": "ph-002",
        "pharmacyName": "Green Cross Chemists",
        "stockItems": [
            {"medicineId": "med-002-para", "medicineName": "Paracetamol", "unitPrice": 4.5, "stockQuantity": 2},
            {"medicineId": "med-002-cet", "medicineName": "Cetirizine", "unitPrice": 3.0, "stockQuantity": 25},
            {"medicineId": "med-002-ibu", "medicineName": "Ibuprofen", "unitPrice": 6.25, "stockQuantity": 8},
        ],
    },
]


def get_pharmacy_stock(request, context, catalog=None):
    """
    Handles a GetPharmacyStock call.

    Args:
        request (dict): {"pharmacyIds": [...]}; an empty list asks for every pharmacy.
        context (grpc.ServicerContext): The gRPC context.

    Returns:
        dict: {"pharmacies": [...]} in the order the ids were requested.
    """
    catalog = CATALOG if catalog is None else catalog
    wanted = request.get("pharmacyIds") or []
    logging.info(f"[IS] Stock request for pharmacies: {wanted or 'all'}")

    if not wanted:
        return {"pharmacies": catalog}

    by_id = {p["pharmacyId"]: p for p in catalog}
    pharmacies = []
    for pharmacy_id in wanted:
        if pharmacy_id not in by_id:
            logging.warning(f"[IS] Unknown pharmacy {pharmacy_id}, skipped.")
            continue
        pharmacies.append(by_id[pharmacy_id])
    return {"pharmacies": pharmacies}


def build_server(port: int = 50051, catalog=None, max_workers: int = 10, host: str = "[::]"):
    """
    Creates (but does not start) the gRPC server.

    Returns:
        tuple[grpc.Server, int]: The server and the port actually bound (useful with port 0).
    """
    def handler(request, context):
        return get_pharmacy_stock(request, context, catalog)

    rpc_handlers = grpc.method_handlers_generic_handler(INVENTORY_SERVICE_NAME, {
        "GetPharmacyStock": grpc.unary_unary_rpc_method_handler(
            handler,
            request_deserializer=json_deserializer,
            response_serializer=json_serializer,
        ),
    })
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=max_workers))
    server.add_generic_rpc_handlers((rpc_handlers,))
    bound_port = server.add_insecure_port(f"{host}:{port}")
    return server, bound_port


def serve():
    server, port = build_server()
    logging.info(f"Mock Inventory Service (gRPC) starting on port {port}...")
    server.start()
    server.wait_for_termination()


if __name__ == '__main__':
    serve()
