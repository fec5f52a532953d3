import asyncio
import json
import re

import httpx
import pytest
from jose import jwt

from delivery_sync.clients import FleetServiceClient, OrderServiceClient, QueryGatewayClient
from delivery_sync.schemas import Session
from delivery_sync.ws_manager import PushChannel

ORDERS_URL = "http://orders.test"
FLEET_URL = "http://fleet.test"
GATEWAY_URL = "http://gateway.test/graphql"


def make_token(claims: dict) -> str:
    return jwt.encode(claims, "test-secret", algorithm="HS256")


def run(coro):
    return asyncio.run(coro)


def order_record(order_id, status="PENDING", vehicle_id=None, client_id=1, description="Box"):
    return {
        "id": order_id,
        "description": description,
        "pickupLocation": "Warehouse",
        "deliveryLocation": "Av. Amazonas",
        "latitude": -0.18,
        "longitude": -78.46,
        "status": status,
        "assignedVehicleId": vehicle_id,
        "clientId": client_id,
    }


class FakeBackend:
    """
    In-memory order, fleet and query services behind httpx.MockTransport.

    Every mutation is echoed to `channel` as an orders_update frame, like the
    real backend does, unless `echo` is switched off.
    """

    def __init__(self, orders=None, drivers=None, vehicles=None, channel=None):
        self.orders = {str(o["id"]): dict(o) for o in (orders or [])}
        self.drivers = list(drivers or [])
        self.vehicles = dict(vehicles or {})
        self.channel = channel
        self.echo = True
        self.calls = []
        self.failures = []
        self._next_id = 1000

    # -------------------------
    # Test controls
    # -------------------------
    def fail(self, method: str, pattern: str, status=500):
        """Make matching requests answer `status`, or raise a transport error for "unreachable"."""
        self.failures.append((method, re.compile(pattern), status))

    def calls_to(self, method: str, pattern: str):
        rx = re.compile(pattern)
        return [c for c in self.calls if c[0] == method and rx.search(c[1])]

    @property
    def transport(self):
        return httpx.MockTransport(lambda request: self.handler(request))

    def push(self, order: dict, event_type="orders_update"):
        if self.channel is not None:
            self.channel.dispatch(json.dumps({"type": event_type, "data": order}))

    # -------------------------
    # Routing
    # -------------------------
    def handler(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.calls.append((method, path))

        for fail_method, rx, status in self.failures:
            if fail_method == method and rx.search(path):
                if status == "unreachable":
                    raise httpx.ConnectError("connection refused", request=request)
                return httpx.Response(status, json={"message": "boom"})

        if method == "GET" and path == "/orders":
            return httpx.Response(200, json=list(self.orders.values()))

        match = re.fullmatch(r"/orders/client/([^/]+)", path)
        if method == "GET" and match:
            mine = [o for o in self.orders.values() if str(o.get("clientId")) == match.group(1)]
            return httpx.Response(200, json=mine)

        if method == "POST" and path == "/orders":
            body = json.loads(request.content)
            self._next_id += 1
            order = {**body, "id": self._next_id, "status": "PENDING", "assignedVehicleId": None}
            self.orders[str(self._next_id)] = order
            self._echo(order)
            return httpx.Response(201, json=order)

        match = re.fullmatch(r"/orders/([^/]+)/assign/([^/]+)", path)
        if method == "PUT" and match:
            order = self.orders[match.group(1)]
            order["assignedVehicleId"] = int(match.group(2))
            self._echo(order)
            return httpx.Response(200, json=order)

        match = re.fullmatch(r"/orders/([^/]+)/status", path)
        if method == "PATCH" and match:
            order = self.orders[match.group(1)]
            order["status"] = request.url.params["status"]
            self._echo(order)
            return httpx.Response(200, json=order)

        if method == "GET" and path == "/fleet/drivers":
            return httpx.Response(200, json=self.drivers)

        match = re.fullmatch(r"/fleet/drivers/([^/]+)/vehicle", path)
        if method == "GET" and match:
            vehicle = self.vehicles.get(match.group(1))
            if vehicle is None:
                return httpx.Response(404, json={"message": "not found"})
            return httpx.Response(200, json=vehicle)

        match = re.fullmatch(r"/fleet/drivers/([^/]+)/status", path)
        if method == "PATCH" and match:
            for driver in self.drivers:
                if str(driver["id"]) == match.group(1):
                    driver["status"] = request.url.params["status"]
            return httpx.Response(200, json={})

        if method == "POST" and path == "/graphql":
            overview = []
            for o in self.orders.values():
                item = {k: o.get(k) for k in ("id", "description", "deliveryLocation", "status", "latitude", "longitude")}
                vid = o.get("assignedVehicleId")
                item["vehicle"] = {"id": vid, "brand": "Yamaha", "model": "XTZ", "plate": "PBX-1",
                                   "driver": {"id": 3, "status": "AVAILABLE"}} if vid else None
                overview.append(item)
            return httpx.Response(200, json={"data": {"orders": overview}})

        return httpx.Response(404, json={"message": f"no route for {method} {path}"})

    def _echo(self, order: dict):
        if self.echo:
            self.push(dict(order))


class IdleConnection:
    """Stands in for a websocket that never delivers a frame."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        await asyncio.Event().wait()


def idle_connect(url):
    return IdleConnection()


# -------------------------
# Fixtures
# -------------------------
@pytest.fixture()
def channel():
    return PushChannel(url="ws://push.test/ws/orders", connect=idle_connect)


@pytest.fixture()
def backend(channel):
    return FakeBackend(
        orders=[order_record(41, client_id=1), order_record(42, client_id=2), order_record(43, client_id=1)],
        drivers=[
            {"id": 3, "userId": 77, "name": "Ana", "status": "AVAILABLE"},
            {"id": 4, "user_id": 88, "name": "Luis", "status": "NO_DISPONIBLE"},
        ],
        vehicles={"3": {"id": 7, "brand": "Yamaha", "model": "XTZ", "plate": "PBX-1"}},
        channel=channel,
    )


@pytest.fixture()
def make_clients(backend):
    def factory():
        transport = backend.transport
        return (
            OrderServiceClient(ORDERS_URL, transport=transport, retries=1),
            FleetServiceClient(FLEET_URL, transport=transport, retries=1),
            QueryGatewayClient(GATEWAY_URL, transport=transport, retries=1),
        )
    return factory


@pytest.fixture()
def driver_session():
    token = make_token({"sub": "ana", "role": "driver", "userId": 77})
    return Session(role="driver", display_name="ana", subject_id=77, token=token)


@pytest.fixture()
def requester_session():
    token = make_token({"sub": "maria", "role": "CLIENTE", "userId": 1})
    return Session(role="cliente", display_name="maria", subject_id=1, token=token)


@pytest.fixture()
def supervisor_session():
    token = make_token({"sub": "boss", "roles": ["ROLE_ADMIN"], "userId": 5})
    return Session(role="admin", display_name="boss", subject_id=5, token=token)
