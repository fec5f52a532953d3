# clients.py
import asyncio
import logging
import uuid
from typing import Any, List, Optional

import httpx
from pydantic import ValidationError

from delivery_sync import config
from delivery_sync.errors import RequestRejected, ServiceUnreachable
from delivery_sync.schemas import DriverProfile, Order, OrderDraft, OrderStatus, Vehicle

logger = logging.getLogger("delivery-sync.clients")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s"))
    logger.addHandler(handler)


async def request_with_retries(client: httpx.AsyncClient, retries: int, **kwargs) -> httpx.Response:
    """Retry transport failures only; any HTTP response is returned as is."""
    for attempt in range(retries):
        try:
            return await client.request(**kwargs)
        except httpx.RequestError as e:
            if attempt == retries - 1:
                raise
            wait = 0.25 * (2 ** attempt)
            logger.warning(f"Retrying request ({attempt + 1}/{retries}) in {wait:.2f}s: {e}")
            await asyncio.sleep(wait)


def parse_orders(items: Any, source: str) -> List[Order]:
    if not isinstance(items, list):
        logger.warning(f"[{source}] Expected a list of orders, got {type(items).__name__}")
        return []
    orders = []
    for item in items:
        try:
            orders.append(Order.model_validate(item))
        except ValidationError as e:
            logger.warning(f"[{source}] Skipping malformed order {item!r}: {e.errors()[:1]}")
    return orders


class ServiceClient:
    service = "service"

    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None,
                 retries: Optional[int] = None, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.retries = retries if retries is not None else config.HTTP_RETRIES
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=timeout if timeout is not None else config.HTTP_TIMEOUT_SECONDS,
            follow_redirects=True,
        )

    async def aclose(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def _request(self, method: str, path: str, token: str, retries: Optional[int] = None,
                       **kwargs) -> httpx.Response:
        trace_id = str(uuid.uuid4())
        url = f"{self.base_url}/{path.lstrip('/')}" if path else self.base_url
        headers = {"Authorization": f"Bearer {token}", "x-trace-id": trace_id}
        logger.info(f"[TRACE {trace_id}] {method} {url}")

        try:
            response = await request_with_retries(
                self._client,
                retries if retries is not None else self.retries,
                method=method,
                url=url,
                headers=headers,
                **kwargs,
            )
        except httpx.RequestError as e:
            logger.error(f"[TRACE {trace_id}] {self.service} unreachable: {e}")
            raise ServiceUnreachable(self.service, f"{self.service} not reachable: {e}") from e

        if response.status_code >= 400:
            logger.warning(f"[TRACE {trace_id}] {self.service} returned {response.status_code}")
            raise RequestRejected(self.service, response.status_code, response.text[:200])
        return response

    @staticmethod
    def _json(response: httpx.Response):
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None


# --------------------------------------------------
# Order service
# --------------------------------------------------
class OrderServiceClient(ServiceClient):
    service = "order-service"

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or config.ORDER_SERVICE_URL, **kwargs)

    async def list_orders(self, token: str) -> List[Order]:
        response = await self._request("GET", "orders", token)
        return parse_orders(self._json(response), self.service)

    async def list_orders_for_requester(self, token: str, requester_id) -> List[Order]:
        response = await self._request("GET", f"orders/client/{requester_id}", token)
        return parse_orders(self._json(response), self.service)

    async def create_order(self, token: str, draft: OrderDraft) -> Optional[Order]:
        # Creation is not idempotent: one attempt only
        response = await self._request(
            "POST", "orders", token, retries=1,
            json=draft.model_dump(by_alias=True, exclude_none=True),
        )
        body = self._json(response)
        return Order.model_validate(body) if isinstance(body, dict) and "id" in body else None

    async def bind_vehicle(self, token: str, order_id, vehicle_id):
        await self._request("PUT", f"orders/{order_id}/assign/{vehicle_id}", token)

    async def set_status(self, token: str, order_id, status: OrderStatus):
        wire_status = config.STATUS_WIRE_NAMES.get(status.value, status.value)
        await self._request("PATCH", f"orders/{order_id}/status", token, params={"status": wire_status})


# --------------------------------------------------
# Fleet service
# --------------------------------------------------
class FleetServiceClient(ServiceClient):
    service = "fleet-service"

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or config.FLEET_SERVICE_URL, **kwargs)

    async def list_drivers(self, token: str) -> List[DriverProfile]:
        response = await self._request("GET", "fleet/drivers", token)
        body = self._json(response) or []
        return [DriverProfile.from_wire(d) for d in body if isinstance(d, dict) and "id" in d]

    async def get_assigned_vehicle(self, token: str, driver_id) -> Optional[Vehicle]:
        try:
            response = await self._request("GET", f"fleet/drivers/{driver_id}/vehicle", token)
        except RequestRejected as e:
            if e.status_code == 404:
                return None
            raise
        body = self._json(response)
        if not isinstance(body, dict) or body.get("id") is None:
            return None
        return Vehicle.model_validate(body)

    async def set_driver_availability(self, token: str, driver_id, status: str):
        await self._request("PATCH", f"fleet/drivers/{driver_id}/status", token, params={"status": status})


# --------------------------------------------------
# Query gateway (supervisor view)
# --------------------------------------------------
ORDERS_OVERVIEW_QUERY = """
query {
  orders {
    id
    description
    deliveryLocation
    status
    latitude
    longitude
    vehicle {
      id
      brand
      model
      plate
      driver {
        id
        status
      }
    }
  }
}
"""


class QueryGatewayClient(ServiceClient):
    service = "query-gateway"

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or config.QUERY_GATEWAY_URL, **kwargs)

    async def fetch_orders_overview(self, token: str) -> List[Order]:
        response = await self._request("POST", "", token, json={"query": ORDERS_OVERVIEW_QUERY})
        body = self._json(response) or {}
        data = body.get("data") or {}
        if not data.get("orders") and body.get("errors"):
            message = "; ".join(
                str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in body["errors"]
            )
            raise RequestRejected(self.service, response.status_code, message)
        return parse_orders(data.get("orders") or [], self.service)
