import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from order_service.commands import commands
from order_service.config import settings
from order_service.database import get_db
from order_service.dependencies import get_inventory, get_publisher
from order_service.schemas.order import OrderCreate
from order_service.services.inventory_client import InventoryClient
from shared.dispatch import render
from shared.messaging import EventPublisher
from shared.middleware import request_id
from shared.stock import AvailabilityRequest

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/availability", tags=["availability"])
async def check_availability(
    body: AvailabilityRequest,
    request: Request,
    inventory: InventoryClient = Depends(get_inventory),
) -> JSONResponse:
    result = await commands.execute("check_availability", body.items, request_id(request), inventory)
    return render(result, exclude_none=True)


@router.post("/orders", tags=["orders"])
async def place_order(
    body: OrderCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    inventory: InventoryClient = Depends(get_inventory),
    publisher: EventPublisher = Depends(get_publisher),
) -> JSONResponse:
    req_id = request_id(request)
    logger.info(
        "Received place_order request",
        extra={
            "request_id": req_id,
            "customer_id": body.customer_id,
            "item_count": len(body.items),
        },
    )
    result = await commands.execute("create_order", db, body, req_id, inventory, publisher)
    return render(result, status_code=status.HTTP_201_CREATED)


@router.get("/orders", tags=["orders"])
async def list_orders(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    return render(await commands.execute("list_orders", db))


@router.get("/orders/{order_id}", tags=["orders"])
async def get_order(
    order_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    logger.info(
        "Received get_order request",
        extra={"request_id": request_id(request), "order_id": order_id},
    )
    return render(await commands.execute("get_order", db, order_id))


@router.get("/orders/{order_id}/invoice", tags=["orders"])
async def get_invoice(order_id: str, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    result = await commands.execute(
        "get_invoice",
        db,
        order_id,
        tax_rate=settings.invoice_tax_rate,
        due_days=settings.invoice_due_days,
    )
    return render(result)
