"""
Locust Load Test Suite

Run scenarios:
  locust -f locustfile.py --tags concurrency  # Free-entry flood against the cap
  locust -f locustfile.py --tags scan         # Token replay at the gate
  locust -f locustfile.py --tags throughput   # Public read endpoints
  locust -f locustfile.py --tags edge         # Bad input
  locust -f locustfile.py                     # All tests

Admin calls use the X-Admin-Key header from GATEPASS_ADMIN_KEY.
"""

import os
import random
import string

import httpx
from locust import HttpUser, between, events, tag, task

ADMIN_HEADERS = {
    "X-Admin-Key": os.getenv("GATEPASS_ADMIN_KEY", "dev-admin-key-change-in-production"),
    "X-Admin-Actor": "locust",
}

# Tokens issued during the run, replayed by ScanUser
TOKENS = []


def random_email():
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=10))
    return f"load_{suffix}@test.com"


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    """Setup: shrink the free pool so the flood actually hits the cap."""
    print("\n" + "=" * 60)
    print("SETUP: total_free_cap=10, fcfs_limit=5")
    print("=" * 60)
    if environment.host:
        resp = httpx.patch(
            f"{environment.host}/api/v1/admin/settings",
            json={"total_free_cap": 10, "fcfs_limit": 5, "free_enabled": True},
            headers=ADMIN_HEADERS,
        )
        print(f"settings -> {resp.status_code}")


class ConcurrencyUser(HttpUser):
    """
    TEST 1: Concurrency - many users against 10 free admissions

    Run: locust -f locustfile.py --tags concurrency -u 200 -r 100 --run-time 30s

    After test, verify:
      SELECT COUNT(*) FROM registrations
      WHERE channel IN ('fcfs', 'lottery') AND status NOT IN ('expired', 'draw_lost', 'revoked');
    Should be <= 10
    """
    wait_time = between(0, 0.1)

    @tag("concurrency")
    @task
    def register_free(self):
        """Everyone fights for the same free pool."""
        with self.client.post(
            "/api/v1/register/free",
            json={"email": random_email(), "name": "Load Test"},
            catch_response=True,
        ) as resp:
            if resp.status_code == 200:
                token = resp.json().get("token")
                if token:
                    TOKENS.append(token)
                resp.success()
            elif resp.status_code in (403, 409):
                resp.success()  # Expected: FULL or DRAW_CLOSED
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @tag("concurrency")
    @task
    def paid_checkout(self):
        """Reserve paid slots that are left to expire."""
        with self.client.post(
            "/api/v1/register/paid",
            json={"tickets": [{"email": random_email(), "name": "Load Test"}]},
            catch_response=True,
        ) as resp:
            if resp.status_code in (200, 403, 409):
                resp.success()
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class ScanUser(HttpUser):
    """
    TEST 2: Gate replay - the same token scanned from several devices

    Run: locust -f locustfile.py --tags scan -u 50 -r 50 --run-time 30s

    Every token must come back VALID exactly once; the rest are ALREADY_USED.
    """
    wait_time = between(0, 0.2)

    @tag("scan")
    @task
    def scan_token(self):
        if not TOKENS:
            return
        with self.client.post(
            "/api/v1/scan",
            json={"token": random.choice(TOKENS)},
            catch_response=True,
        ) as resp:
            if resp.status_code != 200:
                resp.failure(f"Unexpected: {resp.status_code}")
            elif resp.json()["result"] not in ("VALID", "ALREADY_USED"):
                resp.failure(f"Unexpected result: {resp.json()['result']}")
            else:
                resp.success()

    @tag("scan")
    @task
    def scan_forged(self):
        with self.client.post(
            "/api/v1/scan",
            json={"token": "Zm9yZ2VkOjA6ZGVhZGJlZWY"},
            catch_response=True,
        ) as resp:
            if resp.status_code == 200 and resp.json()["result"] == "INVALID":
                resp.success()
            else:
                resp.failure("Forged token was not rejected")


class ThroughputUser(HttpUser):
    """
    TEST 3: Throughput - public reads

    Run: locust -f locustfile.py --tags throughput -u 100 -r 20 --run-time 60s
    """
    wait_time = between(0.1, 0.5)

    @tag("throughput", "read")
    @task(10)
    def public_settings(self):
        self.client.get("/api/v1/tickets/public-settings")

    @tag("throughput", "read")
    @task(3)
    def validate_guest_code(self):
        self.client.get(
            "/api/v1/guest/validate?code=NOSUCHCODE",
            name="/api/v1/guest/validate",
        )

    @tag("throughput")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 4: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    @tag("edge")
    @task
    def invalid_email(self):
        with self.client.post(
            "/api/v1/register/free",
            json={"email": "not-an-email"},
            catch_response=True,
        ) as resp:
            if resp.status_code == 422:
                resp.success()
            else:
                resp.failure(f"Expected 422, got {resp.status_code}")

    @tag("edge")
    @task
    def empty_checkout(self):
        with self.client.post(
            "/api/v1/register/paid",
            json={"tickets": []},
            catch_response=True,
        ) as resp:
            if resp.status_code in (400, 422):
                resp.success()
            else:
                resp.failure(f"Expected 400/422, got {resp.status_code}")

    @tag("edge")
    @task
    def unknown_order(self):
        with self.client.post(
            "/api/v1/register/confirm-payment",
            json={"order_id": "does-not-exist"},
            catch_response=True,
        ) as resp:
            if resp.status_code == 404:
                resp.success()
            else:
                resp.failure(f"Expected 404, got {resp.status_code}")

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post(
            "/api/v1/register/free",
            data="not json at all",
            catch_response=True,
        ) as resp:
            if resp.status_code in (400, 422):
                resp.success()
            else:
                resp.failure(f"Expected 400/422, got {resp.status_code}")

    @tag("edge")
    @task
    def missing_admin_key(self):
        with self.client.post("/api/v1/admin/draw", json={}, catch_response=True) as resp:
            if resp.status_code == 401:
                resp.success()
            else:
                resp.failure(f"Expected 401, got {resp.status_code}")
