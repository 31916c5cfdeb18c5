"""
Repository layer for database operations.
Implements the job and customer stores on SQLModel.
"""

import logging
import re
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel, Session, create_engine, select

from .models import Customer, Job
from .schemas import AppConfig


logger = logging.getLogger(__name__)

CONFLICT_STATUS = re.compile(r"\b409\b")


class DuplicateKeyError(Exception):
    """A job already exists for the same customer and date."""


def is_duplicate_key_error(exc: BaseException) -> bool:
    """True for uniqueness violations, whether typed or reported by message."""
    if isinstance(exc, DuplicateKeyError):
        return True
    response = getattr(exc, "response", None)
    status = getattr(exc, "status_code", None) or getattr(response, "status_code", None)
    if status == 409:
        return True
    message = str(exc).lower()
    return "duplicate key" in message or CONFLICT_STATUS.search(message) is not None


class DatabaseRepository:
    """Database repository for customers and jobs."""

    def __init__(self, config: AppConfig):
        """Initialize database connection."""
        self.config = config
        connect_args = {}
        if config.database.url.startswith("sqlite"):
            # Store calls run on worker threads
            connect_args["check_same_thread"] = False
        self.engine = create_engine(
            config.database.url,
            echo=config.database.echo,
            connect_args=connect_args
        )

    def create_tables(self) -> None:
        """Create all database tables."""
        SQLModel.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return Session(self.engine)

    # Customer operations
    def fetch_customers(self) -> List[Customer]:
        """Get all customers."""
        with self.get_session() as session:
            return list(session.exec(select(Customer)).all())

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        with self.get_session() as session:
            return session.get(Customer, customer_id)

    def add_customer(self, customer: Customer) -> Customer:
        """Insert a new customer."""
        with self.get_session() as session:
            session.add(customer)
            session.commit()
            session.refresh(customer)
            return customer

    def update_customer(self, customer: Customer) -> Customer:
        """Overwrite a stored customer with the given field values."""
        with self.get_session() as session:
            existing = session.get(Customer, customer.id)
            if existing is None:
                raise LookupError(f"Customer {customer.id} not found")
            for key, value in customer.model_dump(exclude={"id"}).items():
                setattr(existing, key, value)
            session.add(existing)
            session.commit()
            session.refresh(existing)
            return existing

    # Job operations
    def fetch_jobs(self) -> List[Job]:
        """Get all jobs ordered by date."""
        with self.get_session() as session:
            return list(session.exec(select(Job).order_by(Job.date)).all())

    def get_jobs_by_date(self, target_date: str) -> List[Job]:
        """Get all jobs for a specific date."""
        with self.get_session() as session:
            return list(session.exec(select(Job).where(Job.date == target_date)).all())

    def add_job(self, job: Job) -> Job:
        """
        Insert a new job.

        Raises:
            DuplicateKeyError: A job already exists for the customer on that date
        """
        with self.get_session() as session:
            session.add(job)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateKeyError(
                    f"duplicate key: job for customer {job.customer_id} on {job.date}"
                ) from e
            session.refresh(job)
            return job

    def update_job(self, job: Job) -> Job:
        """Overwrite a stored job with the given field values."""
        with self.get_session() as session:
            existing = session.get(Job, job.id)
            if existing is None:
                raise LookupError(f"Job {job.id} not found")
            for key, value in job.model_dump(exclude={"id"}).items():
                setattr(existing, key, value)
            session.add(existing)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateKeyError(
                    f"duplicate key: job for customer {job.customer_id} on {job.date}"
                ) from e
            session.refresh(existing)
            return existing

    def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False
