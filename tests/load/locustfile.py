"""
Locust load testing for the job queue API.

Run with:
    locust -f tests/load/locustfile.py --host=http://localhost:8000

Or headless:
    locust -f tests/load/locustfile.py --host=http://localhost:8000 \
        --headless -u 100 -r 10 --run-time 5m
"""

import random
import uuid
from typing import Any

from locust import HttpUser, between, task

QUEUES = ["default", "emails", "reports"]


class JobQueueUser(HttpUser):
    """
    Simulated producer and operator traffic.

    - Job submissions (most common)
    - Job status checks
    - Job listing
    - Queue overview
    """

    wait_time = between(0.5, 2)  # Wait 0.5-2 seconds between requests

    def on_start(self):
        """Called when a user starts."""
        self.created_job_ids: list[str] = []

    @task(10)  # Weight: most common operation
    def submit_job(self):
        """Submit a new job."""
        handler = random.choice(["echo", "sleep", "http_request"])

        payload: dict[str, Any]
        if handler == "echo":
            payload = {"message": f"Load test at {uuid.uuid4().hex[:8]}"}
        elif handler == "sleep":
            payload = {"duration_seconds": random.uniform(0.1, 1.0)}
        else:
            payload = {"url": "https://httpbin.org/get", "method": "GET"}

        response = self.client.post(
            "/jobs",
            json={
                "handler": handler,
                "queue": random.choice(QUEUES),
                "payload": payload,
                "max_attempts": 3,
                "priority": random.choice(["low", "normal", "high"]),
            },
            name="/jobs [POST]",
        )

        if response.status_code == 201:
            job_id = response.json().get("id")
            if job_id:
                self.created_job_ids.append(job_id)
                # Keep only recent job IDs
                if len(self.created_job_ids) > 100:
                    self.created_job_ids = self.created_job_ids[-100:]

    @task(5)
    def get_job_status(self):
        """Check status of a previously created job."""
        if not self.created_job_ids:
            return

        job_id = random.choice(self.created_job_ids)
        self.client.get(f"/jobs/{job_id}", name="/jobs/{job_id} [GET]")

    @task(3)
    def list_jobs(self):
        """List jobs, sometimes filtered by state."""
        state = random.choice([None, "pending", "leased", "completed", "dead_lettered"])
        params: dict[str, Any] = {"page": 1, "page_size": 20}
        if state:
            params["state"] = state

        self.client.get("/jobs", params=params, name="/jobs [GET]")

    @task(2)
    def list_queues(self):
        self.client.get("/queues", name="/queues [GET]")

    @task(1)
    def queue_throughput(self):
        queue = random.choice(QUEUES)
        self.client.get(f"/queues/{queue}/throughput", name="/queues/{name}/throughput [GET]")

    @task(1)
    def list_workers(self):
        self.client.get("/workers", name="/workers [GET]")

    @task(1)
    def health_check(self):
        """Check API health."""
        self.client.get("/health", name="/health [GET]")


class DedupUser(HttpUser):
    """
    User that resubmits jobs with known dedup keys.
    """

    wait_time = between(1, 3)

    def on_start(self):
        """Called when a user starts."""
        self.dedup_keys: list[str] = []

    @task(3)
    def submit_new_job(self):
        """Submit a delayed job under a fresh dedup key."""
        dedup_key = f"dedup-{uuid.uuid4().hex}"

        response = self.client.post(
            "/jobs",
            json={"handler": "echo", "dedup_key": dedup_key, "delay_seconds": 300},
            name="/jobs [POST] (new)",
        )

        if response.status_code == 201:
            self.dedup_keys.append(dedup_key)
            if len(self.dedup_keys) > 50:
                self.dedup_keys = self.dedup_keys[-50:]

    @task(7)
    def submit_duplicate_job(self):
        """Resubmit a live dedup key; the existing job must be returned."""
        if not self.dedup_keys:
            return

        dedup_key = random.choice(self.dedup_keys)

        with self.client.post(
            "/jobs",
            json={"handler": "echo", "dedup_key": dedup_key, "delay_seconds": 300},
            name="/jobs [POST] (duplicate)",
            catch_response=True,
        ) as response:
            if response.status_code == 201:
                response.failure("Duplicate job created!")
            else:
                response.success()
