"""
Shared fixtures: configuration and in-memory stores.
"""

import threading

import pytest

from fieldroute.models import Customer, Job, copy_customer, copy_job
from fieldroute.repo import DuplicateKeyError
from fieldroute.schemas import AppConfig


class InMemoryJobStore:
    """Job store double enforcing the (customer, date) uniqueness rule."""

    def __init__(self, jobs=None):
        self.jobs = {job.id: copy_job(job) for job in jobs or []}
        self.fail_ids = set()
        self.add_calls = 0
        self.updated = []
        self._lock = threading.Lock()

    def fetch_jobs(self):
        with self._lock:
            return [copy_job(job) for job in self.jobs.values()]

    def add_job(self, job):
        with self._lock:
            self.add_calls += 1
            for existing in self.jobs.values():
                if existing.customer_id == job.customer_id and existing.date == job.date:
                    raise DuplicateKeyError('duplicate key value violates unique constraint "uq_job_customer_date"')
            stored = copy_job(job)
            self.jobs[stored.id] = stored
            return copy_job(stored)

    def update_job(self, job):
        with self._lock:
            if job.id in self.fail_ids:
                raise RuntimeError("store unavailable")
            if job.id not in self.jobs:
                raise LookupError(job.id)
            self.jobs[job.id] = copy_job(job)
            self.updated.append(job.id)
            return copy_job(job)

    def get(self, job_id):
        return self.jobs[job_id]


class InMemoryCustomerStore:
    """Customer store double."""

    def __init__(self, customers=None):
        self.customers = {c.id: copy_customer(c) for c in customers or []}

    def fetch_customers(self):
        return [copy_customer(c) for c in self.customers.values()]

    def update_customer(self, customer):
        self.customers[customer.id] = copy_customer(customer)
        return copy_customer(customer)

    def get(self, customer_id):
        return self.customers[customer_id]


def create_test_config():
    """Create test configuration."""
    return AppConfig(
        project={"name": "Test", "version": "0.1.0"},
        database={"url": "sqlite:///:memory:", "echo": False},
        logging={"level": "INFO", "format": "%(message)s"},
        dev={"mock_google_api": True}
    )


@pytest.fixture
def config():
    return create_test_config()


@pytest.fixture
def make_job():
    def _make(job_id, date, customer_id=None, **fields):
        return Job(id=job_id, customer_id=customer_id or f"cust-{job_id}", date=date, **fields)
    return _make


@pytest.fixture
def make_customer():
    def _make(customer_id, address, **fields):
        return Customer(id=customer_id, name=customer_id, address=address, **fields)
    return _make
