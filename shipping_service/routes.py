import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from shared.dispatch import render
from shared.middleware import request_id
from shipping_service.commands import commands
from shipping_service.database import get_db
from shipping_service.lifecycle import LifecyclePolicy
from shipping_service.schemas import StatusUpdate

router = APIRouter(prefix="/shipments", tags=["shipments"])
logger = logging.getLogger(__name__)


def get_policy(request: Request) -> LifecyclePolicy:
    return request.app.state.policy


@router.get("")
async def list_shipments(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    return render(await commands.execute("list_shipments", db))


# Literal segments are registered before /{shipping_id} so they are not shadowed.
@router.get("/order/{order_id}")
async def get_by_order(order_id: str, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    return render(await commands.execute("get_by_order", db, order_id))


@router.get("/track/{tracking_number}")
async def track(tracking_number: str, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    return render(await commands.execute("track", db, tracking_number))


@router.get("/{shipping_id}")
async def get_shipment(shipping_id: str, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    return render(await commands.execute("get_shipment", db, shipping_id))


@router.patch("/{shipping_id}/status")
async def update_status(
    shipping_id: str,
    body: StatusUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    policy: LifecyclePolicy = Depends(get_policy),
) -> JSONResponse:
    logger.info(
        "Received update_status request",
        extra={
            "request_id": request_id(request),
            "shipping_id": shipping_id,
            "status": body.status.value,
        },
    )
    return render(await commands.execute("update_status", db, shipping_id, body.status, policy))
