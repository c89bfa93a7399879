from fastapi import Request

from order_service.services.inventory_client import InventoryClient
from shared.messaging import EventPublisher


def get_inventory(request: Request) -> InventoryClient:
    return request.app.state.inventory


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher
