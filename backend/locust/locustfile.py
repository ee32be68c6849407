"""
Locust Load Test Suite

Seed a studio and a small class first (template expansion owns class rows),
then point the run at them:

  LOAD_STUDIO_ID=1 LOAD_CLASS_ID=1 locust -f locustfile.py --host http://localhost:8000

Run scenarios:
  locust -f locustfile.py --tags concurrency  # Many members, one small class
  locust -f locustfile.py --tags throughput   # Cached schedule reads
  locust -f locustfile.py --tags edge         # Bad input
  locust -f locustfile.py                     # All tests

Tokens are minted locally with the shared SECRET_KEY, standing in for the
auth collaborator.
"""

import os
import random
from datetime import date, timedelta

from locust import HttpUser, task, between, tag, events

from studio_booking.core.security import create_access_token

STUDIO_ID = int(os.environ.get("LOAD_STUDIO_ID", "1"))
CLASS_ID = int(os.environ.get("LOAD_CLASS_ID", "1"))

STAFF_HEADERS = {"Authorization": f"Bearer {create_access_token(1, STUDIO_ID, role='staff')}"}


def member_headers(member_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token(member_id, STUDIO_ID)}"}


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"Target: studio {STUDIO_ID}, class {CLASS_ID}")
    print("=" * 60)


@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    """Booked must never exceed capacity."""
    print("\nVerify with:")
    print(f"  GET /api/v1/classes/{CLASS_ID}/availability")
    print(
        "  SELECT COUNT(*) FROM bookings "
        f"WHERE class_instance_id = {CLASS_ID} AND status IN ('booked', 'confirmed');"
    )


class ConcurrencyUser(HttpUser):
    """
    TEST 1: Concurrency - hundreds of members fight for a handful of seats

    Run: locust -f locustfile.py --tags concurrency -u 100 -r 50 --run-time 30s

    Every member gets one comp class, then reserves the same class. Expected
    outcomes are 201 (seated), 202 (waitlisted) and 409 (already booked).
    The class's booked count must end at or below its capacity.
    """
    wait_time = between(0, 0.1)

    def on_start(self):
        self.member_id = random.randint(10_000, 10_000_000)
        self.headers = member_headers(self.member_id)
        self.booking_id = None

        resp = self.client.post(
            f"/api/v1/studios/{STUDIO_ID}/members/{self.member_id}/comps",
            json={"classes": 1, "reason": "load test"},
            headers=STAFF_HEADERS,
            name="/api/v1/studios/{id}/members/{id}/comps",
        )
        if resp.status_code != 201:
            self.headers = {}

    @tag("concurrency")
    @task(5)
    def reserve_small_class(self):
        if not self.headers:
            return

        with self.client.post(
            f"/api/v1/classes/{CLASS_ID}/reservations",
            headers=self.headers,
            name="/api/v1/classes/{id}/reservations",
            catch_response=True,
        ) as resp:
            if resp.status_code in (201, 202):
                self.booking_id = resp.json()["id"]
                resp.success()
            elif resp.status_code == 409:
                resp.success()  # Expected: already booked
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @tag("concurrency")
    @task(1)
    def cancel_and_free_seat(self):
        """Cancellations push the waitlist through promotion under load."""
        if not self.booking_id:
            return

        with self.client.delete(
            f"/api/v1/bookings/{self.booking_id}",
            headers=self.headers,
            name="/api/v1/bookings/{id}",
            catch_response=True,
        ) as resp:
            if resp.status_code == 200:
                self.booking_id = None
                resp.success()
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @tag("concurrency")
    @task(2)
    def check_availability(self):
        with self.client.get(
            f"/api/v1/classes/{CLASS_ID}/availability",
            headers=self.headers or STAFF_HEADERS,
            name="/api/v1/classes/{id}/availability",
            catch_response=True,
        ) as resp:
            if resp.status_code != 200:
                resp.failure(f"Unexpected: {resp.status_code}")
                return
            data = resp.json()
            if data["booked"] > data["capacity"]:
                resp.failure(f"Oversold: {data['booked']}/{data['capacity']}")
            else:
                resp.success()


class ThroughputUser(HttpUser):
    """
    TEST 2: Throughput - Cache effectiveness

    Run twice:
      1. With Redis: locust -f locustfile.py --tags throughput -u 100 -r 20 --run-time 60s
      2. With REDIS_ENABLED=false on the server, run again

    Compare:
      - Avg response time
      - Requests/sec
      - P95/P99 latency
    """
    wait_time = between(0.1, 0.5)

    def on_start(self):
        self.headers = member_headers(random.randint(10_000, 10_000_000))

    @tag("throughput", "read")
    @task(10)
    def list_schedule_cached(self):
        start = date.today() + timedelta(days=random.randint(0, 3))
        self.client.get(
            f"/api/v1/studios/{STUDIO_ID}/classes",
            params={"date_from": start.isoformat(), "date_to": (start + timedelta(days=7)).isoformat()},
            headers=self.headers,
            name="/api/v1/studios/{id}/classes [cached]",
        )

    @tag("throughput", "read")
    @task(3)
    def my_credits(self):
        self.client.get(
            f"/api/v1/studios/{STUDIO_ID}/credits",
            headers=self.headers,
            name="/api/v1/studios/{id}/credits",
        )

    @tag("throughput")
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

    def on_start(self):
        self.headers = member_headers(random.randint(10_000, 10_000_000))

    def _expect(self, resp, allowed):
        if resp.status_code in allowed:
            resp.success()
        else:
            resp.failure(f"Expected {allowed}, got {resp.status_code}")

    @tag("edge")
    @task
    def unknown_class(self):
        with self.client.post(
            "/api/v1/classes/999999/reservations",
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, (404,))

    @tag("edge")
    @task
    def bogus_coupon(self):
        with self.client.post(
            f"/api/v1/classes/{CLASS_ID}/reservations",
            json={"coupon_code": "NOPE-" + str(random.randint(1, 9999))},
            headers=self.headers,
            name="/api/v1/classes/{id}/reservations [bad coupon]",
            catch_response=True,
        ) as resp:
            self._expect(resp, (400, 409))

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post(
            f"/api/v1/classes/{CLASS_ID}/reservations",
            data="not json at all",
            headers={**self.headers, "Content-Type": "application/json"},
            name="/api/v1/classes/{id}/reservations [garbage]",
            catch_response=True,
        ) as resp:
            self._expect(resp, (400, 422))

    @tag("edge")
    @task
    def zero_capacity(self):
        with self.client.patch(
            f"/api/v1/classes/{CLASS_ID}/capacity",
            json={"max_capacity": 0},
            headers=STAFF_HEADERS,
            name="/api/v1/classes/{id}/capacity [zero]",
            catch_response=True,
        ) as resp:
            self._expect(resp, (422,))

    @tag("edge")
    @task
    def missing_auth(self):
        with self.client.post(
            f"/api/v1/classes/{CLASS_ID}/reservations",
            catch_response=True,
        ) as resp:
            self._expect(resp, (401,))

    @tag("edge")
    @task
    def forged_payment_callback(self):
        with self.client.post(
            "/api/v1/payments/resolved",
            json={"reference": "deadbeef", "succeeded": True},
            headers={"X-Payment-Token": "wrong"},
            catch_response=True,
        ) as resp:
            self._expect(resp, (401,))
