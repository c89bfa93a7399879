import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from shared.events import utcnow
from shipping_service.database import Base


class ShipmentStatus(str, Enum):
    PROCESSING = "processing"
    SHIPPED = "shipped"
    IN_TRANSIT = "in-transit"
    DELIVERED = "delivered"
    FAILED = "failed"


class TransitionState(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    DISCARDED = "discarded"


def _values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


status_type = SAEnum(ShipmentStatus, name="shipmentstatus", values_callable=_values)


class Shipment(Base):
    __tablename__ = "shipments"

    shipping_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    tracking_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    status: Mapped[ShipmentStatus] = mapped_column(
        status_type,
        default=ShipmentStatus.PROCESSING,
        nullable=False,
    )
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(200), nullable=False)
    shipping_address: Mapped[dict] = mapped_column(JSON, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    carrier: Mapped[str] = mapped_column(String(64), nullable=False)
    estimated_delivery: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    in_transit_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_delivery: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class ScheduledTransition(Base):
    """A durable due action: move shipping_id from one status to the next at due_at."""

    __tablename__ = "scheduled_transitions"
    __table_args__ = (Index("ix_scheduled_transitions_state_due", "state", "due_at"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    shipping_id: Mapped[str] = mapped_column(
        ForeignKey("shipments.shipping_id"), nullable=False, index=True
    )
    from_status: Mapped[ShipmentStatus] = mapped_column(status_type, nullable=False)
    to_status: Mapped[ShipmentStatus] = mapped_column(status_type, nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    state: Mapped[TransitionState] = mapped_column(
        SAEnum(TransitionState, name="transitionstate", values_callable=_values),
        default=TransitionState.PENDING,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
