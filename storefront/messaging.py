from __future__ import annotations

import json

import pika

from . import config


def _connect(url: str) -> pika.BlockingConnection:
    params = pika.URLParameters(url)
    params.heartbeat = 30
    params.blocked_connection_timeout = 30
    params.socket_timeout = 5
    return pika.BlockingConnection(params)


def publish_event(
    routing_key: str,
    payload: dict,
    *,
    url: str = config.RABBITMQ_URL,
    exchange: str = config.EVENTS_EXCHANGE,
) -> None:
    connection = _connect(url)
    try:
        ch = connection.channel()
        ch.exchange_declare(exchange=exchange, exchange_type="topic", durable=True)
        body = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
        ch.basic_publish(
            exchange=exchange,
            routing_key=routing_key,
            body=body,
            properties=pika.BasicProperties(
                content_type="application/json",
                delivery_mode=2,  # persistent
            ),
        )
    finally:
        connection.close()
