"""Locust load test for page-view tracking and the dashboard APIs.

Usage:
    ADMIN_API_KEY=... locust -f tests/locustfile.py --host http://localhost:8000
"""

import os
import random
import string
import uuid

from locust import HttpUser, between, task

PAGES = [
    "/",
    "/projects",
    "/projects/analytics-engine",
    "/projects/compiler",
    "/about",
    "/contact",
    "/resume",
    "/blog/async-python",
]

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0; rv:121.0) Gecko/20100101 Firefox/121.0",
]


def _random_string(length: int = 8) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


class VisitorUser(HttpUser):
    """A site visitor browsing a few pages in one session."""

    wait_time = between(0.5, 2)

    def on_start(self):
        self.session_id = uuid.uuid4().hex
        # spread visitors over many IPs so the per-IP ingest limit isn't the bottleneck
        self.headers = {
            "User-Agent": random.choice(USER_AGENTS),
            "X-Forwarded-For": f"198.51.100.{random.randint(1, 254)}",
        }
        self.client.post(
            "/api/v1/analytics/session",
            headers=self.headers,
            json={"session_id": self.session_id, "action": "start"},
            name="/api/v1/analytics/session",
        )

    @task(10)
    def view_page(self):
        payload = {"page_url": random.choice(PAGES), "session_id": self.session_id}
        if random.random() < 0.2:
            payload["referrer"] = f"https://google.com/search?q={_random_string(5)}"
        self.client.post(
            "/api/v1/analytics/track",
            headers=self.headers,
            json=payload,
            name="/api/v1/analytics/track",
        )

    @task(2)
    def heartbeat(self):
        self.client.post(
            "/api/v1/analytics/session",
            headers=self.headers,
            json={"session_id": self.session_id, "action": "heartbeat"},
            name="/api/v1/analytics/session",
        )


class DashboardUser(HttpUser):
    """The site owner polling the dashboard."""

    wait_time = between(2, 5)

    def on_start(self):
        self.auth_headers = {"X-Admin-Key": os.environ.get("ADMIN_API_KEY", "")}

    @task(3)
    def query_data(self):
        days = random.choice([1, 7, 30, 180])
        self.client.get(
            f"/api/v1/analytics/data?days={days}",
            headers=self.auth_headers,
            name="/api/v1/analytics/data",
        )

    @task(2)
    def query_summary(self):
        self.client.get(
            "/api/v1/analytics/summary?days=30",
            headers=self.auth_headers,
            name="/api/v1/analytics/summary",
        )

    @task(1)
    def query_hourly(self):
        self.client.get(
            "/api/v1/analytics/hourly?hours=24",
            headers=self.auth_headers,
            name="/api/v1/analytics/hourly",
        )

    @task(1)
    def query_realtime(self):
        self.client.get(
            "/api/v1/analytics/realtime",
            headers=self.auth_headers,
            name="/api/v1/analytics/realtime",
        )
