from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
)

from .database import Base
from .state_machine import ActorType, OrderStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_order_id() -> str:
    return uuid.uuid4().hex


def _in_clause(column: str, values) -> str:
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


class Service(Base):
    """Owned by the mitra admin surface; read-only here."""

    __tablename__ = "services"

    id = Column(String(64), primary_key=True)
    mitra_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    config_json = Column(JSON, nullable=False)

    def __repr__(self):
        return f"<Service(id='{self.id}', mitra_id='{self.mitra_id}', is_active={self.is_active})>"


class Driver(Base):
    __tablename__ = "drivers"

    id = Column(String(64), primary_key=True)
    mitra_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<Driver(id='{self.id}', mitra_id='{self.mitra_id}', is_active={self.is_active})>"


class DriverService(Base):
    # Which services a driver is qualified to fulfil
    __tablename__ = "driver_services"

    driver_id = Column(String(64), ForeignKey("drivers.id"), primary_key=True)
    service_id = Column(String(64), ForeignKey("services.id"), primary_key=True)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, default=new_order_id)
    service_id = Column(String(64), ForeignKey("services.id"), nullable=False, index=True)
    mitra_id = Column(String(64), nullable=False, index=True)
    driver_id = Column(String(64), nullable=True, index=True) # Null until a driver is assigned
    orderer_identifier = Column(String(255), nullable=False)
    receiver_wa_number = Column(String(32), nullable=True)
    status = Column(String(32), nullable=False, default=OrderStatus.PENDING.value)
    details_json = Column(JSON, nullable=False)
    service_config_snapshot = Column(JSON, nullable=False)
    estimated_cost = Column(Integer, nullable=False)
    final_cost = Column(Integer, nullable=True)
    talangan_amount = Column(Integer, nullable=True)
    is_barang_penting = Column(Boolean, nullable=False, default=False)
    payment_method = Column(String(16), nullable=False, default="CASH")
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(_in_clause("status", OrderStatus), name="orders_status_known"),
        CheckConstraint("estimated_cost >= 0", name="orders_estimated_cost_non_negative"),
        CheckConstraint("final_cost IS NULL OR final_cost >= 0", name="orders_final_cost_non_negative"),
        CheckConstraint("talangan_amount IS NULL OR talangan_amount >= 0", name="orders_talangan_non_negative"),
    )

    def __repr__(self):
        return f"<Order(id='{self.id}', status='{self.status}', version={self.version})>"


class OrderEvent(Base):
    """Append-only audit entry. Rows are inserted, never updated or deleted."""

    __tablename__ = "order_events"

    # Autoincrement id breaks ties between events sharing a timestamp
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    event_type = Column(String(32), nullable=False)
    data_json = Column(JSON, nullable=False)
    actor_type = Column(String(16), nullable=False)
    actor_id = Column(String(255), nullable=False)

    __table_args__ = (
        Index("order_events_order_id_timestamp", "order_id", "timestamp"),
        CheckConstraint(_in_clause("actor_type", ActorType), name="order_events_actor_type_known"),
    )

    def __repr__(self):
        return f"<OrderEvent(id={self.id}, order_id='{self.order_id}', event_type='{self.event_type}')>"
