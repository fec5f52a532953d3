import httpx
import pytest

from delivery_sync.clients import FleetServiceClient, OrderServiceClient, QueryGatewayClient
from delivery_sync.errors import RequestRejected, ServiceUnreachable
from delivery_sync.schemas import OrderDraft, OrderStatus

from tests.conftest import order_record, run


class Recorder:
    """Answers every request with `response` and keeps what was sent."""

    def __init__(self, response=None, status_code=200):
        self.response = response if response is not None else {}
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.response)

    @property
    def transport(self):
        return httpx.MockTransport(self)


class TestOrderServiceClient:
    @pytest.mark.parametrize(
        "status,wire",
        [(OrderStatus.ASSIGNED, "ASIGNADO"), (OrderStatus.IN_TRANSIT, "EN_RUTA"),
         (OrderStatus.DELIVERED, "ENTREGADO"), (OrderStatus.CANCELLED, "CANCELADO")],
    )
    def test_status_written_with_service_names(self, status, wire):
        recorder = Recorder()
        client = OrderServiceClient("http://orders.test", transport=recorder.transport, retries=1)

        run(client.set_status("tok", 42, status))

        request = recorder.requests[0]
        assert request.method == "PATCH"
        assert request.url.path == "/orders/42/status"
        assert request.url.params["status"] == wire

    def test_bearer_and_trace_headers(self):
        recorder = Recorder(response=[order_record(1)])
        client = OrderServiceClient("http://orders.test", transport=recorder.transport, retries=1)

        orders = run(client.list_orders("tok"))

        assert [o.id for o in orders] == [1]
        headers = recorder.requests[0].headers
        assert headers["authorization"] == "Bearer tok"
        assert headers["x-trace-id"]

    def test_malformed_items_are_skipped(self):
        recorder = Recorder(response=[order_record(1), {"status": "PENDING"}, "junk"])
        client = OrderServiceClient("http://orders.test", transport=recorder.transport, retries=1)
        assert [o.id for o in run(client.list_orders("tok"))] == [1]

    def test_error_status_is_a_rejection(self):
        recorder = Recorder(status_code=409)
        client = OrderServiceClient("http://orders.test", transport=recorder.transport, retries=1)

        with pytest.raises(RequestRejected) as info:
            run(client.bind_vehicle("tok", 42, 7))
        assert info.value.status_code == 409

    def test_transport_errors_are_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("refused", request=request)

        client = OrderServiceClient("http://orders.test", transport=httpx.MockTransport(handler), retries=3)

        with pytest.raises(ServiceUnreachable):
            run(client.list_orders("tok"))
        assert len(attempts) == 3

    def test_create_order_sends_camel_case_draft(self):
        recorder = Recorder(response=order_record(1001))
        client = OrderServiceClient("http://orders.test", transport=recorder.transport, retries=1)
        draft = OrderDraft(client_id=1, description="Docs", delivery_location="Av. Shyris", latitude=-0.18)

        created = run(client.create_order("tok", draft))

        assert created.id == 1001
        body = recorder.requests[0].content
        assert b'"deliveryLocation"' in body
        assert b'"clientId"' in body
        assert b"pickupLocation" not in body


class TestFleetServiceClient:
    def test_availability_written_as_given(self):
        recorder = Recorder()
        client = FleetServiceClient("http://fleet.test", transport=recorder.transport, retries=1)

        run(client.set_driver_availability("tok", 3, "NO_DISPONIBLE"))

        assert recorder.requests[0].url.path == "/fleet/drivers/3/status"
        assert recorder.requests[0].url.params["status"] == "NO_DISPONIBLE"

    def test_missing_vehicle(self):
        client = FleetServiceClient("http://fleet.test", transport=Recorder(status_code=404).transport, retries=1)
        assert run(client.get_assigned_vehicle("tok", 3)) is None

    def test_empty_vehicle_body(self):
        client = FleetServiceClient("http://fleet.test", transport=Recorder(response={}).transport, retries=1)
        assert run(client.get_assigned_vehicle("tok", 3)) is None


class TestQueryGatewayClient:
    def test_posts_query_to_endpoint(self):
        recorder = Recorder(response={"data": {"orders": [{"id": 5, "status": "EN_RUTA", "vehicle": {"id": 7}}]}})
        client = QueryGatewayClient("http://gateway.test/graphql", transport=recorder.transport, retries=1)

        orders = run(client.fetch_orders_overview("tok"))

        assert recorder.requests[0].url.path == "/graphql"
        assert orders[0].status == OrderStatus.IN_TRANSIT
        assert orders[0].vehicle_id == 7
