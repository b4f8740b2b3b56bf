"""
Locust Load Test Suite

Run scenarios:
  locust -f locustfile.py --tags contention   # Racing transitions on one booking
  locust -f locustfile.py --tags webhook      # Signed event ingestion + replays
  locust -f locustfile.py --tags edge         # Test bad input
  locust -f locustfile.py                     # All tests

Environment:
  WEBHOOK_SECRET, CRON_SECRET, JWT_SECRET_KEY must match the server's.
"""

import os
import random
import uuid
from datetime import datetime, timezone, timedelta

import jwt
from locust import HttpUser, task, between, tag, events

WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "load-test-webhook-secret")
CRON_SECRET = os.getenv("CRON_SECRET", "load-test-cron-secret")
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "super-secret-key-change-in-production")

RESTAURANT_IDS = [str(uuid.uuid4()) for _ in range(5)]

# Shared state
BOOKING_IDS = []
CONTENDED_BOOKING_ID = None


def staff_headers(role: str = "staff") -> dict:
    token = jwt.encode(
        {"sub": str(uuid.uuid4()), "role": role, "exp": datetime.now(timezone.utc) + timedelta(hours=2)},
        JWT_SECRET_KEY,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


def booking_payload(instant_book: bool = False) -> dict:
    when = datetime.now(timezone.utc) + timedelta(days=random.randint(1, 30), hours=random.randint(0, 6))
    return {
        "restaurant_id": random.choice(RESTAURANT_IDS),
        "user_id": str(uuid.uuid4()),
        "party_size": random.randint(1, 8),
        "booking_time": when.isoformat(),
        "instant_book": instant_book,
    }


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"SETUP: {len(RESTAURANT_IDS)} restaurants, webhook secret set: {bool(WEBHOOK_SECRET)}")
    print("=" * 60)


class ContentionUser(HttpUser):
    """
    TEST 1: Contention - many staff devices move the same booking

    Run: locust -f locustfile.py --tags contention -u 100 -r 50 --run-time 30s

    After test, verify exactly one history row per edge:
      SELECT old_status, new_status, COUNT(*) FROM booking_status_history
      WHERE booking_id = X GROUP BY 1, 2;
    Every count should be 1.
    """
    wait_time = between(0, 0.1)

    def on_start(self):
        self.headers = staff_headers()
        if not CONTENDED_BOOKING_ID:
            resp = self.client.post("/api/v1/bookings", json=booking_payload(), headers=self.headers)
            if resp.status_code == 201:
                globals()["CONTENDED_BOOKING_ID"] = resp.json()["id"]
                print(f"\n✓ Created contended booking {CONTENDED_BOOKING_ID}\n")

    @tag("contention")
    @task
    def race_transition(self):
        """Everyone tries the next edge; losers must get 409, never 500."""
        if not CONTENDED_BOOKING_ID:
            return
        target = random.choice(["confirmed", "seated", "ordered", "completed"])
        with self.client.post(
            f"/api/v1/bookings/{CONTENDED_BOOKING_ID}/transition",
            json={"status": target},
            headers=self.headers,
            name="/api/v1/bookings/{id}/transition",
            catch_response=True,
        ) as resp:
            if resp.status_code in (200, 409):
                resp.success()
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class WebhookUser(HttpUser):
    """
    TEST 2: Event ingestion throughput, including at-least-once replays

    Run: locust -f locustfile.py --tags webhook -u 50 -r 10 --run-time 60s

    Replays must come back 200 with duplicate=true.
    """
    wait_time = between(0.05, 0.3)

    def on_start(self):
        self.headers = staff_headers()
        self.signed = {"X-Webhook-Signature": WEBHOOK_SECRET}

    @tag("webhook")
    @task(3)
    def create_and_confirm(self):
        resp = self.client.post("/api/v1/bookings", json=booking_payload(), headers=self.headers)
        if resp.status_code != 201:
            return
        booking = resp.json()
        BOOKING_IDS.append(booking["id"])
        self.client.post(
            "/api/v1/webhooks/bookings",
            json={
                "event": "booking.created",
                "data": {
                    "booking_id": booking["id"],
                    "restaurant_id": booking["restaurant_id"],
                    "party_size": booking["party_size"],
                    "user_id": booking["user_id"],
                },
            },
            headers=self.signed,
            name="webhook booking.created",
        )
        self.client.post(
            "/api/v1/webhooks/bookings",
            json={"event": "booking.confirmed", "data": {"booking_id": booking["id"], "user_id": booking["user_id"]}},
            headers=self.signed,
            name="webhook booking.confirmed",
        )

    @tag("webhook")
    @task(1)
    def replay_confirmation(self):
        if not BOOKING_IDS:
            return
        with self.client.post(
            "/api/v1/webhooks/bookings",
            json={"event": "booking.confirmed", "data": {"booking_id": random.choice(BOOKING_IDS), "user_id": "replay"}},
            headers=self.signed,
            name="webhook replay",
            catch_response=True,
        ) as resp:
            if resp.status_code in (200, 409):
                resp.success()
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @tag("webhook")
    @task(1)
    def drain_outbox(self):
        self.client.post(
            "/api/v1/cron/process-notifications",
            headers={"Authorization": f"Bearer {CRON_SECRET}"},
        )

    @tag("webhook")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    def _expect(self, resp, codes):
        if resp.status_code in codes:
            resp.success()
        else:
            resp.failure(f"Expected {codes}, got {resp.status_code}")

    @tag("edge")
    @task
    def bad_signature(self):
        with self.client.post(
            "/api/v1/webhooks/bookings",
            json={"event": "booking.confirmed", "data": {"booking_id": "x", "user_id": "y"}},
            headers={"X-Webhook-Signature": "wrong"},
            catch_response=True,
        ) as resp:
            self._expect(resp, (401,))

    @tag("edge")
    @task
    def unknown_event(self):
        with self.client.post(
            "/api/v1/webhooks/bookings",
            json={"event": "booking.teleported", "data": {"booking_id": "x"}},
            headers={"X-Webhook-Signature": WEBHOOK_SECRET},
            catch_response=True,
        ) as resp:
            self._expect(resp, (400,))

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post(
            "/api/v1/webhooks/bookings",
            data="not json at all",
            headers={"X-Webhook-Signature": WEBHOOK_SECRET},
            catch_response=True,
        ) as resp:
            self._expect(resp, (400,))

    @tag("edge")
    @task
    def unknown_booking(self):
        with self.client.post(
            "/api/v1/webhooks/bookings",
            json={"event": "booking.confirmed", "data": {"booking_id": str(uuid.uuid4()), "user_id": "y"}},
            headers={"X-Webhook-Signature": WEBHOOK_SECRET},
            catch_response=True,
        ) as resp:
            self._expect(resp, (404,))

    @tag("edge")
    @task
    def zero_party(self):
        payload = booking_payload()
        payload["party_size"] = 0
        with self.client.post("/api/v1/bookings", json=payload, headers=staff_headers(), catch_response=True) as resp:
            self._expect(resp, (400,))

    @tag("edge")
    @task
    def broadcast_without_admin(self):
        with self.client.post(
            "/api/v1/admin/notifications/send",
            json={"title": "t", "body": "b", "channels": ["push"], "target": {"type": "all_users"}},
            headers=staff_headers(),
            catch_response=True,
        ) as resp:
            self._expect(resp, (403,))
