"""Load scenarios for the ordering saga's contention points.

StockContentionUser hammers a handful of shared stock rows so that
concurrent writes collide on the row version and exercise the ledger's
retry path. WebhookFloodUser replays signed gateway events, most of them
duplicates, to measure how fast the idempotency boundary acknowledges them.
"""

import random

from locust import HttpUser, between, constant_pacing, task

from loadtests.data_generators import gateway_event, product_id, signed_webhook, stock_quantity
from loadtests.helpers.response import extract_error_detail

_HOT_PRODUCTS = [f"HOT-{n}" for n in range(5)]


class StockContentionUser(HttpUser):
    wait_time = between(0.05, 0.2)

    def on_start(self):
        for pid in _HOT_PRODUCTS:
            self.client.put(f"/inventory/{pid}", json={"quantity": 100}, name="PUT /inventory/{id}")

    @task(5)
    def receive_hot_stock(self):
        pid = random.choice(_HOT_PRODUCTS)
        with self.client.post(
            f"/inventory/{pid}/receive",
            json=stock_quantity(1, 5),
            catch_response=True,
            name="POST /inventory/{id}/receive",
        ) as resp:
            if resp.status_code == 409:
                resp.success()  # Conflict after exhausting retries is an accepted outcome
            elif resp.status_code != 200:
                resp.failure(f"Receive stock failed: {resp.status_code}: {extract_error_detail(resp)}")

    @task(3)
    def read_hot_stock(self):
        self.client.get(f"/inventory/{random.choice(_HOT_PRODUCTS)}", name="GET /inventory/{id}")

    @task(1)
    def initialize_cold_stock(self):
        self.client.put(f"/inventory/{product_id()}", json=stock_quantity(), name="PUT /inventory/{id}")


class WebhookFloodUser(HttpUser):
    wait_time = constant_pacing(0.1)

    def on_start(self):
        self.events = [
            gateway_event(random.choice(["payment_intent.succeeded", "payment_intent.payment_failed"]))
            for _ in range(10)
        ]

    @task(4)
    def redeliver_event(self):
        body, headers = signed_webhook(random.choice(self.events))
        with self.client.post(
            "/payments/webhook",
            data=body,
            headers=headers,
            catch_response=True,
            name="POST /payments/webhook (redelivery)",
        ) as resp:
            if resp.status_code != 200:
                resp.failure(f"Webhook refused: {resp.status_code}: {extract_error_detail(resp)}")

    @task(1)
    def unsigned_event(self):
        with self.client.post(
            "/payments/webhook",
            json=gateway_event("payment_intent.succeeded"),
            headers={"X-Gateway-Signature": "forged"},
            catch_response=True,
            name="POST /payments/webhook (forged)",
        ) as resp:
            if resp.status_code == 401:
                resp.success()
            else:
                resp.failure(f"Forged webhook accepted: {resp.status_code}")
