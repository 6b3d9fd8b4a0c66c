"""
mock_delivery_agent.py — Simulated Delivery Agent GPS Feed (RabbitMQ)

This module simulates a delivery agent's phone sending location fixes while it
drives an order to the customer, and prints the order events the service relays.

Communication Channels:
    - Output Queue:    'delivery.location.updates'  → GPS fixes for the order
    - Input Exchange:  'pharmacy.orders.events'     ← status/location events (order.<id>.*)

Usage:
    python -m mock_services.mock_delivery_agent <orderId> <agentId>
"""

import json
import logging
import sys
import threading
import time

import pika

from pharmacy_orders import config
from pharmacy_orders.clients import rabbitmq_connection

logging.basicConfig(level=logging.INFO)

# Straight line from the pharmacy to the customer, in 6 steps
ROUTE_START = (34.0522, -118.2437)
ROUTE_END = (34.0622, -118.2537)
ROUTE_STEPS = 6


def route_points(start=ROUTE_START, end=ROUTE_END, steps=ROUTE_STEPS):
    for i in range(steps + 1):
        fraction = i / steps
        yield (
            round(start[0] + (end[0] - start[0]) * fraction, 6),
            round(start[1] + (end[1] - start[1]) * fraction, 6),
        )


def send_location_updates(order_id: str, agent_id: str, interval: float = 2.0):
    """
    Publishes one location fix per route point for the given order.

    Args:
        order_id (str): Order being delivered.
        agent_id (str): Delivery agent sending the fixes.
        interval (float): Seconds between fixes.
    """
    try:
        connection = rabbitmq_connection()
        channel = connection.channel()
        channel.queue_declare(queue=config.LOCATION_UPDATES_QUEUE)

        logging.info(f"[AGENT] Starting route for order {order_id}")
        for lat, lng in route_points():
            message = {"orderId": order_id, "agentId": agent_id, "lat": lat, "lng": lng}
            channel.basic_publish(exchange='', routing_key=config.LOCATION_UPDATES_QUEUE, body=json.dumps(message))
            logging.info(f"[AGENT] Location sent for {order_id}: {lat}, {lng}")
            time.sleep(interval)

        connection.close()
    except pika.exceptions.AMQPError as e:
        logging.error(f"[AGENT] Error in location update thread: {e}")


def on_order_event(ch, method, properties, body):
    try:
        event = json.loads(body)
        logging.info(f"[AGENT] Event {event.get('type')} for order {event.get('orderId')}: "
                     f"{event.get('status') or event.get('location')}")
    except json.JSONDecodeError:
        logging.error(f"[AGENT] Invalid event received: {body!r}")
    ch.basic_ack(delivery_tag=method.delivery_tag)


def main():
    """
    Follows the order's events and drives the simulated route.
    Stops gracefully on keyboard interrupt (Ctrl+C).
    """
    if len(sys.argv) != 3:
        print("usage: python -m mock_services.mock_delivery_agent <orderId> <agentId>")
        sys.exit(2)
    order_id, agent_id = sys.argv[1], sys.argv[2]

    threading.Thread(target=send_location_updates, args=(order_id, agent_id), daemon=True).start()

    while True:
        try:
            connection = rabbitmq_connection()
            channel = connection.channel()
            channel.exchange_declare(exchange=config.ORDER_EVENTS_EXCHANGE, exchange_type='topic', durable=True)
            result = channel.queue_declare(queue='', exclusive=True)
            channel.queue_bind(
                exchange=config.ORDER_EVENTS_EXCHANGE,
                queue=result.method.queue,
                routing_key=f"order.{order_id}.*",
            )

            logging.info(f"[AGENT] Following events for order {order_id}.")
            channel.basic_consume(queue=result.method.queue, on_message_callback=on_order_event)
            channel.start_consuming()
        except pika.exceptions.AMQPConnectionError as e:
            logging.warning(f"MQ connection failed, retrying in 5s... {e}")
            time.sleep(5)
        except KeyboardInterrupt:
            break


if __name__ == '__main__':
    main()
