import asyncio
import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from delivery_sync.main import DashboardService, create_app
from delivery_sync.schemas import Session
from delivery_sync.session_store import SessionContext, SessionStore

from tests.conftest import make_token, run

DRIVER = make_token({"sub": "ana", "role": "driver", "userId": 77})
REQUESTER = make_token({"sub": "maria", "role": "ROLE_CLIENTE", "userId": 1})
SUPERVISOR = make_token({"sub": "boss", "roles": "manager"})


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def service(tmp_path, channel, make_clients):
    orders, fleet, gateway = make_clients()
    context = SessionContext(SessionStore(str(tmp_path / "session.json")))
    return DashboardService(context=context, channel=channel, orders=orders, fleet=fleet, gateway=gateway,
                            reconcile_delay=5.0)


@pytest.fixture()
def client(service):
    with TestClient(create_app(service)) as c:
        yield c


def order_in(snapshot, order_id):
    return next(o for o in snapshot["orders"] if str(o["id"]) == str(order_id))


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "delivery-sync healthy"}

    def test_metrics_exposed(self, client):
        client.get("/driver", headers=bearer(DRIVER))
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "delivery_sync_active_dashboards" in response.text


class TestAccessGate:
    def test_missing_credential_redirects_to_entry(self, client):
        response = client.get("/driver", follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"].startswith("/?reason=")

    def test_unreadable_credential_redirects_to_entry(self, client):
        response = client.get("/admin", headers=bearer("garbage"), follow_redirects=False)
        assert response.status_code == 303

    def test_wrong_role_redirects_with_reason(self, client):
        response = client.get("/driver", headers=bearer(REQUESTER), follow_redirects=False)
        assert response.status_code == 303
        assert "cliente" in response.headers["location"]

    def test_driver_actions_are_gated_too(self, client, backend):
        response = client.post("/driver/orders/42/status", params={"status": "ASSIGNED"},
                               headers=bearer(SUPERVISOR), follow_redirects=False)
        assert response.status_code == 303
        assert backend.calls_to("PUT", r"/assign/") == []


class TestSession:
    @pytest.mark.parametrize(
        "claims,view",
        [({"role": "driver"}, "/driver"), ({"roles": "manager"}, "/admin"), ({"role": "cliente"}, "/client"),
         ({"sub": "someone"}, "/client"), ({"authorities": ["ROLE_AUDITOR"]}, "/admin")],
    )
    def test_sign_in_routes_by_role(self, client, claims, view):
        response = client.post("/session", json={"token": make_token(claims)})
        assert response.status_code == 200
        assert response.json()["view"] == view

    def test_unreadable_token_is_refused(self, client, service):
        response = client.post("/session", json={"token": "garbage"})
        assert response.status_code == 401
        assert service.context.token is None

    def test_stored_credential_opens_view(self, client):
        client.post("/session", json={"token": DRIVER})
        response = client.get("/driver")
        assert response.status_code == 200
        assert response.json()["view"] == "driver"

    def test_logout_unmounts_dashboards(self, client, channel):
        client.post("/session", json={"token": DRIVER})
        client.get("/driver")
        assert channel.subscriber_count == 1

        assert client.delete("/session").json() == {"success": True, "view": "/"}
        assert channel.subscriber_count == 0
        assert client.get("/driver", follow_redirects=False).status_code == 303


class TestDashboards:
    def test_driver_snapshot(self, client):
        body = client.get("/driver", headers=bearer(DRIVER)).json()
        assert body["role"] == "driver"
        assert [o["id"] for o in body["orders"]] == [43, 42, 41]
        assert "deliveryLocation" in body["orders"][0]
        assert body["summary"]["vehicle_id"] == 7
        assert body["summary"]["online"] is True

    def test_same_credential_reuses_the_dashboard(self, client, backend, channel):
        client.get("/driver", headers=bearer(DRIVER))
        client.get("/driver", headers=bearer(DRIVER))
        assert len(backend.calls_to("GET", r"^/orders$")) == 1
        assert channel.subscriber_count == 1

    def test_requester_snapshot_only_has_own_orders(self, client):
        body = client.get("/client", headers=bearer(REQUESTER)).json()
        assert [o["id"] for o in body["orders"]] == [43, 41]
        assert body["summary"]["PENDING"] == 2

    def test_supervisor_snapshot(self, client, backend):
        body = client.get("/admin", headers=bearer(SUPERVISOR)).json()
        assert body["summary"]["total"] == 3
        assert backend.calls_to("POST", r"^/graphql$")

    def test_requester_creates_order(self, client, backend):
        response = client.post("/client/orders", headers=bearer(REQUESTER),
                               json={"description": "Docs", "deliveryLocation": "Av. Shyris"})
        assert response.status_code == 201
        created = response.json()["order"]
        assert created["status"] == "PENDING"
        assert created["clientId"] == 1

        body = client.get("/client", headers=bearer(REQUESTER)).json()
        assert body["orders"][0]["id"] == created["id"]


class TestDriverActions:
    def test_take_order(self, client, backend):
        client.get("/driver", headers=bearer(DRIVER))
        response = client.post("/driver/orders/42/status", params={"status": "ASSIGNED"}, headers=bearer(DRIVER))
        assert response.status_code == 202

        body = client.get("/driver", headers=bearer(DRIVER)).json()
        assert order_in(body, 42)["status"] == "ASSIGNED"
        assert body["summary"]["active_order_id"] == 42

    def test_invalid_transition_is_a_conflict(self, client):
        response = client.post("/driver/orders/42/status", params={"status": "DELIVERED"}, headers=bearer(DRIVER))
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransition"

    def test_unknown_status(self, client):
        response = client.post("/driver/orders/42/status", params={"status": "LOST"}, headers=bearer(DRIVER))
        assert response.status_code == 422

    def test_capacity_is_a_conflict(self, client, backend):
        backend.orders["41"].update(status="ASSIGNED", assignedVehicleId=7)
        response = client.post("/driver/orders/42/status", params={"status": "ASSIGNED"}, headers=bearer(DRIVER))
        assert response.status_code == 409
        assert response.json()["error"] == "CapacityExceeded"

    def test_bind_rejection(self, client, backend):
        backend.fail("PUT", r"/assign/", 500)
        response = client.post("/driver/orders/42/status", params={"status": "ASSIGNED"}, headers=bearer(DRIVER))
        assert response.status_code == 502
        body = response.json()
        assert body["error"] == "AssignmentFailed"
        assert body["message"] == "The request was rejected by the server."
        assert backend.calls_to("PATCH", r"/status") == []

    def test_status_failure_offers_retry(self, client, backend):
        backend.fail("PATCH", r"/orders/42/status", "unreachable")
        response = client.post("/driver/orders/42/status", params={"status": "ASSIGNED"}, headers=bearer(DRIVER))
        assert response.status_code == 503
        body = response.json()
        assert body["error"] == "StatusUpdateFailed"
        assert body["retry"] == "/driver/orders/42/status/retry"
        assert body["message"] == "Could not reach the server. Check your connection."

        backend.failures.clear()
        assert client.post(body["retry"], headers=bearer(DRIVER)).status_code == 202
        assert len(backend.calls_to("PUT", r"/assign/")) == 1

    def test_status_alias_is_reported_canonically(self, client, backend):
        backend.orders["42"].update(status="ASSIGNED", assignedVehicleId=7)
        response = client.post("/driver/orders/42/status", params={"status": "en_ruta"}, headers=bearer(DRIVER))
        assert response.status_code == 202
        assert response.json()["status"] == "IN_TRANSIT"
        assert backend.orders["42"]["status"] == "EN_RUTA"

    def test_retry_without_failure_is_a_conflict(self, client):
        response = client.post("/driver/orders/42/status/retry", headers=bearer(DRIVER))
        assert response.status_code == 409

    def test_toggle_availability(self, client, backend):
        response = client.post("/driver/availability", headers=bearer(DRIVER))
        assert response.json() == {"success": True, "online": False}
        assert backend.drivers[0]["status"] == "NO_DISPONIBLE"

    def test_order_service_outage_on_load(self, client, backend):
        backend.fail("GET", r"^/orders$", 503)
        response = client.get("/driver", headers=bearer(DRIVER))
        assert response.status_code == 502
        assert response.json()["error"] == "RequestRejected"


class TestLiveDashboard:
    def test_unknown_view_is_closed(self, client):
        with client.websocket_connect("/ws/nowhere") as ws:
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

    def test_gate_failure_sends_redirect(self, client):
        with client.websocket_connect(f"/ws/driver?token={REQUESTER}") as ws:
            message = ws.receive_json()
        assert message["type"] == "redirect"
        assert message["to"] == "/"

    def test_snapshot_then_live_updates(self, client, channel):
        with client.websocket_connect(f"/ws/driver?token={DRIVER}") as ws:
            first = ws.receive_json()
            assert first["type"] == "snapshot"
            assert [o["id"] for o in first["orders"]] == [43, 42, 41]

            ws.send_json({"action": "set_status", "order_id": 42, "status": "ASSIGNED"})
            acked, assigned = False, False
            for _ in range(10):
                message = ws.receive_json()
                if message["type"] == "ack":
                    acked = True
                elif message["type"] == "snapshot" and order_in(message, 42)["status"] == "ASSIGNED":
                    assigned = True
                if acked and assigned:
                    break
            assert acked and assigned

    def test_disconnect_releases_the_dashboard(self, client, service, channel):
        with client.websocket_connect(f"/ws/driver?token={DRIVER}") as ws:
            ws.receive_json()
            assert channel.subscriber_count == 1

        for _ in range(100):
            if channel.subscriber_count == 0 and not service._live:
                break
            time.sleep(0.01)
        assert channel.subscriber_count == 0
        assert not service._live

    def test_action_errors_are_reported(self, client):
        with client.websocket_connect(f"/ws/driver?token={DRIVER}") as ws:
            ws.receive_json()
            ws.send_json({"action": "set_status", "order_id": 42, "status": "DELIVERED"})
            reply = ws.receive_json()
            assert reply["type"] == "error"
            assert reply["error"] == "InvalidTransition"

            ws.send_json({"action": "create_order", "order": {}})
            assert ws.receive_json()["error"] == "UnknownAction"


def driver(name):
    token = make_token({"sub": name, "role": "driver", "userId": 77})
    return Session(role="driver", display_name=name, subject_id=77, token=token)


class TestDashboardService:
    def make(self, tmp_path, channel, make_clients, **kwargs):
        orders, fleet, gateway = make_clients()
        context = SessionContext(SessionStore(str(tmp_path / "session.json")))
        return DashboardService(context=context, channel=channel, orders=orders, fleet=fleet, gateway=gateway,
                                reconcile_delay=5.0, **kwargs)

    def test_navigation_dashboards_are_capped(self, tmp_path, channel, make_clients):
        service = self.make(tmp_path, channel, make_clients, max_dashboards=2)
        sessions = [driver(f"driver-{i}") for i in range(4)]

        async def scenario():
            mounted = [await service.dashboard_for("driver", s) for s in sessions]
            again = await service.dashboard_for("driver", sessions[-1])
            return mounted, again

        mounted, again = run(scenario())
        assert channel.subscriber_count == 2
        assert [d.mounted for d in mounted] == [False, False, True, True]
        assert again is mounted[-1]
        assert set(service.identity_cache) == {s.token for s in sessions[2:]}

    def test_recent_use_protects_a_dashboard(self, tmp_path, channel, make_clients):
        service = self.make(tmp_path, channel, make_clients, max_dashboards=2)
        first, second, third = driver("a"), driver("b"), driver("c")

        async def scenario():
            kept = await service.dashboard_for("driver", first)
            evicted = await service.dashboard_for("driver", second)
            await service.dashboard_for("driver", first)
            await service.dashboard_for("driver", third)
            return kept, evicted

        kept, evicted = run(scenario())
        assert kept.mounted
        assert not evicted.mounted

    def test_slow_load_does_not_block_other_views(self, tmp_path, channel, make_clients, backend):
        service = self.make(tmp_path, channel, make_clients)
        supervisor = Session(role="manager", display_name="boss", subject_id=None, token=SUPERVISOR)
        serve = backend.handler

        async def scenario():
            release = asyncio.Event()

            async def slow_orders(request):
                if request.method == "GET" and request.url.path == "/orders":
                    await release.wait()
                return serve(request)

            backend.handler = slow_orders
            driver_load = asyncio.create_task(service.dashboard_for("driver", driver("ana")))
            await asyncio.sleep(0.01)
            admin = await asyncio.wait_for(service.dashboard_for("admin", supervisor), timeout=1.0)
            waiting = not driver_load.done()
            release.set()
            dashboard = await driver_load
            return admin, waiting, dashboard

        admin, waiting, dashboard = run(scenario())
        assert admin.mounted
        assert waiting is True
        assert dashboard.mounted

    def test_failed_load_is_not_kept(self, tmp_path, channel, make_clients, backend):
        service = self.make(tmp_path, channel, make_clients)
        backend.fail("GET", r"^/orders$", 503)

        async def scenario():
            try:
                await service.dashboard_for("driver", driver("ana"))
            except Exception as e:
                return e

        assert run(scenario()) is not None
        assert channel.subscriber_count == 0
        assert service._dashboards == {}
        assert service._locks == {}
