"""Faker-based data generators for Locust load test scenarios.

Payloads match the field names of the ordering API's Pydantic request
schemas. Webhook bodies are signed with the same HMAC secret the server's
fake gateway is configured with (``ORDERING_WEBHOOK_SECRET``).
"""

import hashlib
import hmac
import json
import os
import random
import uuid

from faker import Faker

fake = Faker()

WEBHOOK_SECRET = os.getenv("ORDERING_WEBHOOK_SECRET", "whsec_test")


def product_id(prefix: str = "LT") -> str:
    return f"{prefix}-{fake.unique.bothify('????-####').upper()}"


def stock_quantity(low: int = 1, high: int = 50) -> dict:
    return {"quantity": random.randint(low, high)}


def gateway_event(event_type: str, intent_id: str | None = None, order_number: str | None = None) -> dict:
    intent_id = intent_id or f"pi_{uuid.uuid4().hex[:16]}"
    return {
        "id": f"evt_{uuid.uuid4().hex[:16]}",
        "type": event_type,
        "data": {"object": {"id": intent_id, "metadata": {"order_number": order_number} if order_number else {}}},
    }


def signed_webhook(event: dict) -> tuple[bytes, dict]:
    """Encode ``event`` and return (body, headers) for POST /payments/webhook."""
    body = json.dumps(event, sort_keys=True).encode("utf-8")
    signature = hmac.new(WEBHOOK_SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return body, {"Content-Type": "application/json", "X-Gateway-Signature": signature}
