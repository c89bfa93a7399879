from datetime import datetime

from pydantic import EmailStr, Field

from shared.events import CamelModel, LineItemSnapshot, Money, OrderSnapshot, ShippingAddress
from shared.stock import ReservationRequest


class OrderCreate(CamelModel):
    customer_id: str = Field(min_length=1, max_length=64)
    customer_name: str = Field(min_length=1, max_length=100)
    customer_email: EmailStr
    items: list[ReservationRequest] = Field(min_length=1)
    shipping_address: ShippingAddress


class OrderResponse(OrderSnapshot):
    pass


class CustomerInfo(CamelModel):
    id: str
    name: str
    email: str


class InvoiceResponse(CamelModel):
    invoice_id: str
    order_id: str
    customer_info: CustomerInfo
    items: list[LineItemSnapshot]
    subtotal: Money
    tax: Money
    total: Money
    issue_date: datetime
    due_date: datetime
    shipping_address: ShippingAddress
