import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from inventory_service.commands import commands
from inventory_service.database import get_db
from inventory_service.schemas import ProductCreate, ProductUpdate, QuantityAdjustment
from shared.dispatch import render
from shared.middleware import request_id
from shared.stock import AvailabilityRequest, ReserveRequest

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/availability", tags=["stock"])
async def check_availability(
    body: AvailabilityRequest,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    result = await commands.execute("check_availability", db, body.items)
    return render(result, exclude_none=True)


@router.get("/products", tags=["products"])
async def list_products(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    return render(await commands.execute("list_products", db))


@router.post("/products", tags=["products"])
async def create_product(body: ProductCreate, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    result = await commands.execute(
        "create_product",
        db,
        sku=body.sku,
        name=body.name,
        price=body.price,
        quantity=body.quantity,
        description=body.description,
    )
    return render(result, status_code=status.HTTP_201_CREATED)


@router.get("/products/{product_id}", tags=["products"])
async def get_product(product_id: str, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    return render(await commands.execute("get_product", db, product_id))


@router.put("/products/{product_id}", tags=["products"])
async def update_product(
    product_id: str, body: ProductUpdate, db: AsyncSession = Depends(get_db)
) -> JSONResponse:
    result = await commands.execute(
        "update_product",
        db,
        product_id,
        name=body.name,
        price=body.price,
        description=body.description,
    )
    return render(result)


@router.patch("/products/{product_id}/quantity", tags=["stock"])
async def restock(
    product_id: str,
    body: QuantityAdjustment,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    logger.info(
        "Received quantity adjustment",
        extra={"request_id": request_id(request), "product_id": product_id, "delta": body.delta},
    )
    return render(await commands.execute("restock", db, product_id, body.delta))


@router.post("/products/{product_id}/reserve", tags=["stock"])
async def reserve(
    product_id: str,
    body: ReserveRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    logger.info(
        "Received reserve request",
        extra={
            "request_id": request_id(request),
            "product_id": product_id,
            "reference": body.reference,
            "quantity": body.quantity,
        },
    )
    result = await commands.execute("reserve", db, product_id, body.quantity, body.reference)
    return render(result)


@router.post("/products/{product_id}/release", tags=["stock"])
async def release(
    product_id: str,
    body: ReserveRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    logger.info(
        "Received release request",
        extra={
            "request_id": request_id(request),
            "product_id": product_id,
            "reference": body.reference,
            "quantity": body.quantity,
        },
    )
    result = await commands.execute("release", db, product_id, body.quantity, body.reference)
    return render(result)
