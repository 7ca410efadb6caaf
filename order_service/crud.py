from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from . import models
from .errors import ConflictError, NotFound

logger = logging.getLogger(__name__)


async def get_order(db: AsyncSession, order_id: str) -> models.Order:
    order = await db.get(models.Order, order_id)
    if order is None:
        logger.warning(f"Order requested but not found: {order_id}")
        raise NotFound(f"Order {order_id} not found", code="ORDER_NOT_FOUND")
    return order


async def get_active_service(db: AsyncSession, service_id: str) -> models.Service:
    service = await db.get(models.Service, service_id)
    if service is None or not service.is_active:
        logger.warning(f"Service requested but not found or inactive: {service_id}")
        raise NotFound(f"Service {service_id} not found or inactive", code="SERVICE_NOT_FOUND")
    return service


async def get_driver(db: AsyncSession, driver_id: str) -> models.Driver | None:
    return await db.get(models.Driver, driver_id)


async def is_driver_qualified(db: AsyncSession, driver_id: str, service_id: str) -> bool:
    stmt = select(models.DriverService).where(
        models.DriverService.driver_id == driver_id,
        models.DriverService.service_id == service_id,
    )
    result = await db.execute(stmt)
    return result.scalars().first() is not None


async def create_order(db: AsyncSession, **fields) -> models.Order:
    order = models.Order(**fields)
    db.add(order)
    await db.flush() # Assigns defaults so the caller can read id and timestamps
    logger.info(f"Created order {order.id} for service {order.service_id}")
    return order


async def update_order_versioned(db: AsyncSession, order: models.Order, changes: dict) -> models.Order:
    """
    Applies changes only if the row still carries the version the caller read.

    Zero matched rows means another writer got there first.
    """
    expected_version = order.version
    stmt = (
        update(models.Order)
        .where(models.Order.id == order.id, models.Order.version == expected_version)
        .values(**changes, version=expected_version + 1, updated_at=models.utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount == 0:
        logger.warning(f"Version conflict on order {order.id} (expected version {expected_version})")
        raise ConflictError(
            "Order was modified concurrently, reload and retry",
            details={"orderId": order.id, "expectedVersion": expected_version},
        )
    # Bring the loaded instance in line with the row that was just written
    await db.refresh(order)
    return order


async def list_orders_for_mitra(db: AsyncSession, mitra_id: str, filters) -> tuple[list[models.Order], bool]:
    """One page of a mitra's orders, newest first, plus whether another page follows."""
    stmt = select(models.Order).where(models.Order.mitra_id == mitra_id)
    if filters.status is not None:
        stmt = stmt.where(models.Order.status == filters.status.value)
    if filters.service_id:
        stmt = stmt.where(models.Order.service_id == filters.service_id)
    if filters.driver_id:
        stmt = stmt.where(models.Order.driver_id == filters.driver_id)
    if filters.date_from is not None:
        stmt = stmt.where(models.Order.created_at >= filters.date_from)
    if filters.date_to is not None:
        stmt = stmt.where(models.Order.created_at <= filters.date_to)

    stmt = (
        stmt.order_by(models.Order.created_at.desc(), models.Order.id.desc())
        .offset((filters.page - 1) * filters.limit)
        .limit(filters.limit + 1) # One extra row tells us if there is a next page
    )
    result = await db.execute(stmt)
    orders = list(result.scalars().all())
    return orders[:filters.limit], len(orders) > filters.limit


async def list_orders_for_driver(db: AsyncSession, driver_id: str, statuses) -> list[models.Order]:
    stmt = (
        select(models.Order)
        .where(
            models.Order.driver_id == driver_id,
            models.Order.status.in_([status.value for status in statuses]),
        )
        .order_by(models.Order.updated_at.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())
