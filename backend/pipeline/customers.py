"""
Customer Directory
==================
Resolves (or creates) the customer record a checkout belongs to, keyed
by email. Authentication and session issuance live elsewhere.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import structlog

from database import Database
from schemas.orders import Customer

logger = structlog.get_logger().bind(component="customer_directory")


def split_name(full_name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """'Ada King Lovelace' -> ('Ada', 'King Lovelace')"""
    if not full_name or not full_name.strip():
        return None, None
    first, _, rest = full_name.strip().partition(" ")
    return first, rest.strip() or None


def normalize_email(email: str) -> str:
    return email.strip().lower()


class ICustomerDirectory(ABC):

    @abstractmethod
    async def find_or_create_by_email(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Customer:
        pass

    @abstractmethod
    async def find_by_email(self, email: str) -> Optional[Customer]:
        pass


class InMemoryCustomerDirectory(ICustomerDirectory):

    def __init__(self):
        self._by_email: dict[str, Customer] = {}
        self._lock = asyncio.Lock()

    async def find_or_create_by_email(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Customer:
        key = normalize_email(email)
        async with self._lock:
            customer = self._by_email.get(key)
            if customer is None:
                customer = Customer(email=key, first_name=first_name, last_name=last_name)
                self._by_email[key] = customer
                logger.info("customer_created", customer_id=customer.id)
            return customer

    async def find_by_email(self, email: str) -> Optional[Customer]:
        async with self._lock:
            return self._by_email.get(normalize_email(email))


class PostgresCustomerDirectory(ICustomerDirectory):

    async def find_or_create_by_email(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Customer:
        # DO UPDATE (a no-op) so RETURNING yields the existing row too
        row = await Database.fetch_one(
            """
            INSERT INTO customers (email, first_name, last_name)
            VALUES ($1, $2, $3)
            ON CONFLICT (email) DO UPDATE SET email = EXCLUDED.email
            RETURNING id, email, first_name, last_name
            """,
            normalize_email(email),
            first_name,
            last_name,
        )
        return Customer(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
        )

    async def find_by_email(self, email: str) -> Optional[Customer]:
        row = await Database.fetch_one(
            "SELECT id, email, first_name, last_name FROM customers WHERE email = $1",
            normalize_email(email),
        )
        if row is None:
            return None
        return Customer(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
        )
