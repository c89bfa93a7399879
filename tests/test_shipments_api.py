import pytest

from shipping_service import lifecycle


@pytest.fixture
def ship(shipping_sessions, make_event, policy):
    async def create(order_id: str | None = None):
        async with shipping_sessions() as db:
            shipment, _ = await lifecycle.on_order_created(db, make_event(order_id), policy)
        return shipment

    return create


class TestShipmentLookups:
    async def test_get_by_id_and_order(self, shipping_api, ship):
        shipment = await ship("order-123")

        by_id = await shipping_api.get(f"/shipments/{shipment.shipping_id}")
        by_order = await shipping_api.get("/shipments/order/order-123")

        assert by_id.status_code == by_order.status_code == 200
        assert by_id.json() == by_order.json()
        body = by_id.json()
        assert body["status"] == "processing"
        assert body["totalAmount"] == 2599.98
        assert body["shippingAddress"]["zipCode"] == "N1 9GU"
        assert body["actualDelivery"] is None

    async def test_list(self, shipping_api, ship):
        await ship()
        await ship()

        response = await shipping_api.get("/shipments")

        assert response.status_code == 200
        assert len(response.json()) == 2

    async def test_tracking_includes_timeline(self, shipping_api, ship):
        shipment = await ship()
        await shipping_api.patch(f"/shipments/{shipment.shipping_id}/status", json={"status": "shipped"})

        response = await shipping_api.get(f"/shipments/track/{shipment.tracking_number}")

        assert response.status_code == 200
        body = response.json()
        assert body["trackingNumber"] == shipment.tracking_number
        assert body["carrier"] == "Standard Shipping"
        assert [e["status"] for e in body["timeline"]] == ["processing", "shipped"]

    @pytest.mark.parametrize(
        "path",
        ["/shipments/SHIP-NOPE", "/shipments/order/nope", "/shipments/track/TRKNOPE"],
    )
    async def test_unknown_is_404(self, shipping_api, path):
        response = await shipping_api.get(path)
        assert response.status_code == 404
        assert "error" in response.json()


class TestStatusUpdates:
    async def test_delivered_from_shipped_stamps_once(self, shipping_api, ship):
        shipment = await ship()
        url = f"/shipments/{shipment.shipping_id}/status"
        await shipping_api.patch(url, json={"status": "shipped"})

        first = await shipping_api.patch(url, json={"status": "delivered"})
        second = await shipping_api.patch(url, json={"status": "delivered"})

        assert first.status_code == second.status_code == 200
        assert first.json()["status"] == "delivered"
        assert first.json()["actualDelivery"] is not None
        assert first.json()["inTransitAt"] is not None
        fetched = (await shipping_api.get(f"/shipments/{shipment.shipping_id}")).json()
        assert second.json()["actualDelivery"] == fetched["actualDelivery"]

    async def test_backward_transition_rejected(self, shipping_api, ship):
        shipment = await ship()
        url = f"/shipments/{shipment.shipping_id}/status"
        await shipping_api.patch(url, json={"status": "in-transit"})

        response = await shipping_api.patch(url, json={"status": "shipped"})

        assert response.status_code == 400
        assert response.json()["error"] == "Cannot transition shipment from 'in-transit' to 'shipped'"
        assert (await shipping_api.get(f"/shipments/{shipment.shipping_id}")).json()["status"] == "in-transit"

    async def test_unknown_status_rejected(self, shipping_api, ship):
        shipment = await ship()

        response = await shipping_api.patch(
            f"/shipments/{shipment.shipping_id}/status", json={"status": "lost"}
        )

        assert response.status_code == 400
        assert response.json()["details"][0]["field"] == "status"

    async def test_update_unknown_shipment(self, shipping_api):
        response = await shipping_api.patch("/shipments/SHIP-NOPE/status", json={"status": "shipped"})
        assert response.status_code == 404
