# Import all models here so SQLAlchemy registers them with Base.metadata
from order_service.models.order import Order, OrderLineItem, OrderStatus
from order_service.models.outbox import OutboxMessage, StockCompensation

__all__ = [
    "Order",
    "OrderLineItem",
    "OrderStatus",
    "OutboxMessage",
    "StockCompensation",
]
