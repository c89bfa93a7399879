"""
HTTP client for the inventory service.

  - every call carries a timeout; a timeout, connection error or 5xx becomes
    UpstreamUnavailableError, so nothing waits unbounded
  - read-only calls (availability) are retried with exponential backoff
  - reserve/release are sent once; their safety on ambiguous failure comes
    from the reservation reference, not from retrying here
"""

import asyncio
import logging

import httpx

from shared.errors import (
    InsufficientQuantityError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from shared.middleware import REQUEST_ID_HEADER
from shared.stock import (
    AvailabilityReport,
    ReleaseResult,
    ReservationRequest,
    ReservationSnapshot,
)

logger = logging.getLogger(__name__)


class InventoryClient:
    def __init__(self, http: httpx.AsyncClient, max_retries: int = 3, retry_backoff: float = 0.2) -> None:
        self._http = http
        self._max_retries = max(1, max_retries)
        self._retry_backoff = retry_backoff

    @classmethod
    def create(
        cls,
        base_url: str,
        timeout: float,
        max_retries: int = 3,
        retry_backoff: float = 0.2,
    ) -> "InventoryClient":
        http = httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(timeout))
        return cls(http, max_retries=max_retries, retry_backoff=retry_backoff)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _send(self, method: str, path: str, payload: dict, request_id: str) -> httpx.Response:
        try:
            response = await self._http.request(
                method, path, json=payload, headers={REQUEST_ID_HEADER: request_id}
            )
        except httpx.RequestError as exc:
            raise UpstreamUnavailableError(
                f"Inventory service unreachable: {exc.__class__.__name__}"
            ) from exc
        if response.status_code >= 500:
            raise UpstreamUnavailableError(
                f"Inventory service error: HTTP {response.status_code}"
            )
        return response

    async def _send_with_retry(
        self, method: str, path: str, payload: dict, request_id: str
    ) -> httpx.Response:
        for attempt in range(1, self._max_retries + 1):
            try:
                return await self._send(method, path, payload, request_id)
            except UpstreamUnavailableError as exc:
                if attempt == self._max_retries:
                    logger.error(
                        "Inventory call failed after %d attempt(s)",
                        attempt,
                        extra={"path": path, "request_id": request_id, "error": exc.message},
                    )
                    raise
                backoff_seconds = self._retry_backoff * 2 ** (attempt - 1)
                logger.warning(
                    "Inventory call failed on attempt %d: retrying in %.2fs",
                    attempt,
                    backoff_seconds,
                    extra={"path": path, "request_id": request_id, "error": exc.message},
                )
                await asyncio.sleep(backoff_seconds)
        raise AssertionError("unreachable")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get("error", response.text)
        except ValueError:
            return response.text

    async def check_availability(
        self, items: list[ReservationRequest], request_id: str = "unknown"
    ) -> AvailabilityReport:
        payload = {"items": [item.model_dump(by_alias=True) for item in items]}
        response = await self._send_with_retry("POST", "/availability", payload, request_id)
        if response.status_code == 400:
            raise ValidationError(self._error_message(response), response.json().get("details"))
        return AvailabilityReport.model_validate(response.json())

    async def reserve(
        self, product_id: str, quantity: int, reference: str, request_id: str = "unknown"
    ) -> ReservationSnapshot:
        response = await self._send(
            "POST",
            f"/products/{product_id}/reserve",
            {"quantity": quantity, "reference": reference},
            request_id,
        )
        if response.status_code == 404:
            raise NotFoundError(f"Product {product_id} not found")
        if response.status_code == 409:
            details = (response.json().get("details") or [{}])[0]
            raise InsufficientQuantityError(
                product_id, quantity, int(details.get("availableQuantity", 0))
            )
        if response.status_code >= 400:
            raise ValidationError(self._error_message(response))
        return ReservationSnapshot.model_validate(response.json())

    async def release(
        self, product_id: str, quantity: int, reference: str, request_id: str = "unknown"
    ) -> ReleaseResult:
        response = await self._send(
            "POST",
            f"/products/{product_id}/release",
            {"quantity": quantity, "reference": reference},
            request_id,
        )
        if response.status_code == 404:
            raise NotFoundError(f"Product {product_id} not found")
        if response.status_code >= 400:
            raise ValidationError(self._error_message(response))
        return ReleaseResult.model_validate(response.json())
