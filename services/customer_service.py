"""
Customer Service

1. Find-or-create by phone (unique, immutable)
2. Best-effort display name reconciliation
3. Block / unblock
"""

import structlog
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import StorageError
from models import NAME_MAX_LENGTH, Customer, utcnow
from services.realtime import RealtimePublisher

logger = structlog.get_logger("customer_service")


def placeholder_name(phone: str) -> str:
    return f"Customer {phone[-4:]}"


class CustomerService:
    """Customer identity management."""

    def __init__(self, db: AsyncSession, realtime: RealtimePublisher):
        self.db = db
        self.realtime = realtime

    async def get(self, customer_id: str) -> Optional[Customer]:
        try:
            return await self.db.get(Customer, customer_id, populate_existing=True)
        except SQLAlchemyError as e:
            raise StorageError(f"Customer lookup failed: {e}") from e

    async def get_by_phone(self, phone: str) -> Optional[Customer]:
        try:
            result = await self.db.execute(select(Customer).where(Customer.phone == phone))
            return result.scalars().first()
        except SQLAlchemyError as e:
            raise StorageError(f"Customer lookup failed: {e}") from e

    async def resolve(self, phone: str, display_name: Optional[str] = None) -> Tuple[Customer, bool]:
        """
        Returns (customer, created).

        Raises StorageError only when lookup/create cannot complete; a failed
        name update is logged and ignored.
        """
        if display_name:
            display_name = display_name[:NAME_MAX_LENGTH]

        customer = await self.get_by_phone(phone)

        if customer is None:
            customer, created = await self._create(phone, display_name)
            if created:
                return customer, True

        if display_name and display_name != customer.name:
            await self._reconcile_name(customer, display_name)

        return customer, False

    async def _create(self, phone: str, display_name: Optional[str]) -> Tuple[Customer, bool]:
        customer = Customer(phone=phone, name=display_name or placeholder_name(phone))
        self.db.add(customer)
        try:
            await self.db.commit()
        except IntegrityError:
            # Concurrent delivery created the same phone first
            await self.db.rollback()
            existing = await self.get_by_phone(phone)
            if existing is None:
                raise StorageError(f"Customer create conflict for ...{phone[-4:]} but no row found")
            logger.info("Customer created concurrently, reusing", phone_suffix=phone[-4:])
            return existing, False
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Customer create failed: {e}") from e

        logger.info("Customer created", phone_suffix=phone[-4:], customer_id=customer.id)
        await self.realtime.inserted("customers", customer.id)
        return customer, True

    async def _reconcile_name(self, customer: Customer, display_name: str):
        customer_id = customer.id
        try:
            customer.name = display_name
            customer.updated_at = utcnow()
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.warning("Customer name update failed", customer_id=customer_id, error=str(e))
            await self.db.rollback()
            # rollback expired the instance; reload the stored state
            try:
                await self.db.refresh(customer)
            except SQLAlchemyError as refresh_error:
                raise StorageError(f"Customer reload failed: {refresh_error}") from refresh_error
            return

        logger.info("Customer name updated", customer_id=customer_id)
        await self.realtime.updated("customers", customer_id)

    async def set_blocked(self, phone: str, is_blocked: bool) -> Optional[Customer]:
        customer = await self.get_by_phone(phone)
        if customer is None:
            return None

        try:
            customer.is_blocked = is_blocked
            customer.updated_at = utcnow()
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Customer block update failed: {e}") from e

        logger.info("Customer block status changed", phone_suffix=phone[-4:], is_blocked=is_blocked)
        await self.realtime.updated("customers", customer.id)
        return customer
