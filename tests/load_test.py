"""
Load tests using Locust.

Simulates storefront checkouts and gateway webhook traffic.

Run with: locust -f tests/load_test.py --host=http://localhost:8000

Set RAZORPAY_WEBHOOK_SECRET to the server's webhook secret so the
webhook user sends correctly signed bodies.
"""
import json
import os
import random
import uuid

from locust import HttpUser, between, task

from integrations.signatures import compute_signature


def _order_payload() -> dict:
    quantity = random.randint(1, 3)
    return {
        "amount": 450 * quantity,
        "currency": "INR",
        "items": [
            {
                "productId": "tee-001",
                "name": "Classic Tee",
                "color": "black",
                "size": "M",
                "quantity": quantity,
                "price": 450,
            }
        ],
        "userDetails": {
            "name": "Load Tester",
            "email": f"load-{uuid.uuid4().hex[:8]}@example.com",
            "phone": "9876543210",
            "address": {
                "street": "12 MG Road",
                "city": "Bengaluru",
                "state": "Karnataka",
                "pincode": "560001",
            },
        },
    }


class StorefrontUser(HttpUser):
    """
    Simulated shopper placing orders and checking their status.
    """

    wait_time = between(1, 3)  # Wait 1-3 seconds between requests

    def on_start(self) -> None:
        self.remote_order_ids = []

    @task(10)
    def create_order(self) -> None:
        with self.client.post(
            "/api/payment/create-order",
            json=_order_payload(),
            catch_response=True,
        ) as response:
            if response.status_code == 201:
                self.remote_order_ids.append(response.json()["remote_order_ref"])
                response.success()
            elif response.status_code == 400:
                # Client error - don't count as failure
                response.success()
            else:
                response.failure(f"Unexpected status: {response.status_code}")

    @task(5)
    def payment_status(self) -> None:
        if not self.remote_order_ids:
            return
        remote_order_id = random.choice(self.remote_order_ids)
        self.client.get(
            f"/api/payment/status/{remote_order_id}", name="/api/payment/status/[id]"
        )

    @task(3)
    def get_health(self) -> None:
        """Check health endpoint."""
        self.client.get("/health")

    @task(1)
    def get_metrics(self) -> None:
        """Check metrics endpoint."""
        self.client.get("/metrics")


class GatewayWebhookUser(HttpUser):
    """
    Gateway redelivering the same event.

    Every delivery after the first must be acknowledged without changing
    any order.
    """

    wait_time = between(0.5, 1.5)

    def on_start(self) -> None:
        self.secret = os.environ.get("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
        self.payment_id = f"pay_load{uuid.uuid4().hex[:10]}"

    @task
    def redeliver_capture(self) -> None:
        body = json.dumps(
            {
                "entity": "event",
                "event": "payment.captured",
                "payload": {
                    "payment": {
                        "entity": {
                            "id": self.payment_id,
                            "order_id": "order_loadtest",
                            "amount": 100,
                            "status": "captured",
                        }
                    }
                },
            }
        ).encode("utf-8")

        with self.client.post(
            "/api/webhooks/razorpay",
            data=body,
            headers={
                "Content-Type": "application/json",
                "X-Razorpay-Signature": compute_signature(body, self.secret),
            },
            catch_response=True,
        ) as response:
            if response.status_code == 200:
                response.success()
            else:
                response.failure(f"Webhook rejected: {response.status_code}")
