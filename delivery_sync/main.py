import asyncio
import logging
from collections import OrderedDict
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from delivery_sync import config
from delivery_sync.access_gate import VIEW_ROLES, check_access, view_for_role
from delivery_sync.clients import FleetServiceClient, OrderServiceClient, QueryGatewayClient
from delivery_sync.dashboards import Dashboard, DriverDashboard, RequesterDashboard, SupervisorDashboard
from delivery_sync.errors import (
    AssignmentFailed,
    CapacityExceeded,
    CredentialMissing,
    DeliverySyncError,
    InvalidTransition,
    RoleUnauthorized,
    ServiceError,
    ServiceUnreachable,
    StatusUpdateFailed,
)
from delivery_sync.schemas import LoginResult, Session, parse_status
from delivery_sync.session_store import SessionContext
from delivery_sync.ws_manager import PushChannel

# --------------------------------------------------
# Logging
# --------------------------------------------------
logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
logger = logging.getLogger("delivery-sync")


class OrderRequest(BaseModel):
    description: str
    delivery_location: str = Field(alias="deliveryLocation")
    pickup_location: Optional[str] = Field(default=None, alias="pickupLocation")
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    model_config = {"populate_by_name": True}


# --------------------------------------------------
# Runtime: clients, push channel, mounted dashboards
# --------------------------------------------------
class DashboardService:
    def __init__(self, context: Optional[SessionContext] = None, channel: Optional[PushChannel] = None,
                 orders: Optional[OrderServiceClient] = None, fleet: Optional[FleetServiceClient] = None,
                 gateway: Optional[QueryGatewayClient] = None, reconcile_delay: Optional[float] = None,
                 max_dashboards: Optional[int] = None):
        self.context = context or SessionContext()
        self.channel = channel or PushChannel()
        self.orders = orders or OrderServiceClient()
        self.fleet = fleet or FleetServiceClient()
        self.gateway = gateway or QueryGatewayClient()
        self.reconcile_delay = reconcile_delay
        self.identity_cache: Dict[str, dict] = {}
        self.max_dashboards = max_dashboards or config.MAX_HTTP_DASHBOARDS
        # Least recently used first
        self._dashboards: "OrderedDict[Tuple[str, str], Dashboard]" = OrderedDict()
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._live: set = set()

    def build(self, view: str, session: Session) -> Dashboard:
        if view == "client":
            return RequesterDashboard(session, self.channel, self.orders, reconcile_delay=self.reconcile_delay)
        if view == "driver":
            return DriverDashboard(session, self.channel, self.orders, self.fleet,
                                   identity_cache=self.identity_cache, reconcile_delay=self.reconcile_delay)
        if view == "admin":
            return SupervisorDashboard(session, self.channel, self.orders, self.gateway,
                                       reconcile_delay=self.reconcile_delay)
        raise HTTPException(status_code=404, detail=f"Unknown view '{view}'")

    async def dashboard_for(self, view: str, session: Session) -> Dashboard:
        """The dashboard backing HTTP navigation for this view and credential."""
        key = (view, session.token)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            dashboard = self._dashboards.get(key)
            if dashboard is not None and dashboard.mounted:
                self._dashboards.move_to_end(key)
                return dashboard
            dashboard = self.build(view, session)
            try:
                await dashboard.mount()
            except Exception:
                self._dashboards.pop(key, None)
                if self._locks.get(key) is lock:
                    del self._locks[key]
                raise
            self._dashboards[key] = dashboard
            self._dashboards.move_to_end(key)
        await self._evict()
        return dashboard

    async def _evict(self):
        while len(self._dashboards) > self.max_dashboards:
            (view, token), dashboard = self._dashboards.popitem(last=False)
            self._locks.pop((view, token), None)
            if not any(t == token for _, t in self._dashboards):
                self.identity_cache.pop(token, None)
            logger.info(f"[SESSION] Evicting idle {view} dashboard ({len(self._dashboards)} kept)")
            await dashboard.unmount()

    async def open_live(self, view: str, session: Session) -> Dashboard:
        """A dashboard owned by one websocket connection."""
        dashboard = self.build(view, session)
        await dashboard.mount()
        self._live.add(dashboard)
        return dashboard

    async def close_live(self, dashboard: Dashboard):
        self._live.discard(dashboard)
        await dashboard.unmount()

    async def logout(self):
        self.context.clear()
        self.identity_cache.clear()
        dashboards = list(self._dashboards.values()) + list(self._live)
        self._dashboards.clear()
        self._locks.clear()
        self._live.clear()
        for dashboard in dashboards:
            await dashboard.unmount()
        logger.info(f"[SESSION] Logged out, {len(dashboards)} dashboards unmounted")

    async def start(self):
        self.channel.start()

    async def stop(self):
        for dashboard in list(self._dashboards.values()) + list(self._live):
            await dashboard.unmount()
        self._dashboards.clear()
        self._locks.clear()
        self._live.clear()
        await self.channel.close()
        for client in (self.orders, self.fleet, self.gateway):
            await client.aclose()


def entry_redirect(reason: str) -> RedirectResponse:
    return RedirectResponse(url=f"{config.ENTRY_PATH}?{urlencode({'reason': reason})}", status_code=303)


def error_payload(error: DeliverySyncError, **extra) -> dict:
    return {"success": False, "error": type(error).__name__, "message": error.user_message, "detail": str(error),
            **extra}


def status_for(error: DeliverySyncError) -> int:
    if isinstance(error, (InvalidTransition, CapacityExceeded)):
        return 409
    if isinstance(error, RoleUnauthorized):
        return 403
    if isinstance(error, CredentialMissing):
        return 401
    if isinstance(error, (AssignmentFailed, StatusUpdateFailed)):
        return 503 if error.unreachable else 502
    if isinstance(error, ServiceUnreachable):
        return 503
    if isinstance(error, ServiceError):
        return 502
    return 400


def bearer_token(request: Request, context: SessionContext) -> Optional[str]:
    auth = request.headers.get("authorization")
    if auth and auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return context.token


def create_app(service: Optional[DashboardService] = None) -> FastAPI:
    app = FastAPI(title="Delivery Sync Dashboards")
    app.state.service = service or DashboardService()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup():
        await app.state.service.start()
        logger.info("Push channel started.")

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.service.stop()

    # -------------------------
    # Error mapping
    # -------------------------
    @app.exception_handler(CredentialMissing)
    async def credential_missing(request: Request, exc: CredentialMissing):
        return entry_redirect(exc.user_message)

    @app.exception_handler(RoleUnauthorized)
    async def role_unauthorized(request: Request, exc: RoleUnauthorized):
        logger.info(f"[GATE] {request.url.path}: {exc}")
        return entry_redirect(exc.user_message)

    @app.exception_handler(DeliverySyncError)
    async def sync_error(request: Request, exc: DeliverySyncError):
        extra = {}
        if isinstance(exc, StatusUpdateFailed):
            extra["retry"] = f"/driver/orders/{exc.order_id}/status/retry"
        return JSONResponse(error_payload(exc, **extra), status_code=status_for(exc))

    # -------------------------
    # Dependencies
    # -------------------------
    def get_service() -> DashboardService:
        return app.state.service

    def gate(view: str):
        def dependency(request: Request, service: DashboardService = Depends(get_service)) -> Session:
            return check_access(bearer_token(request, service.context), VIEW_ROLES[view])
        return dependency

    # -------------------------
    # Health / metrics
    # -------------------------
    @app.get("/health")
    def health():
        return {"status": "delivery-sync healthy"}

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # -------------------------
    # Session
    # -------------------------
    @app.post("/session")
    def sign_in(body: LoginResult, service: DashboardService = Depends(get_service)):
        session = service.context.init(body.token)
        if session is None:
            service.context.clear()
            raise HTTPException(status_code=401, detail="Unreadable credential")
        return {"success": True, "role": session.role, "view": f"/{view_for_role(session.role)}"}

    @app.delete("/session")
    async def sign_out(service: DashboardService = Depends(get_service)):
        await service.logout()
        return {"success": True, "view": config.ENTRY_PATH}

    # -------------------------
    # Dashboards
    # -------------------------
    @app.get("/client")
    async def client_view(session: Session = Depends(gate("client")), service: DashboardService = Depends(get_service)):
        dashboard = await service.dashboard_for("client", session)
        return dashboard.snapshot().model_dump(by_alias=True, mode="json")

    @app.get("/driver")
    async def driver_view(session: Session = Depends(gate("driver")), service: DashboardService = Depends(get_service)):
        dashboard = await service.dashboard_for("driver", session)
        return dashboard.snapshot().model_dump(by_alias=True, mode="json")

    @app.get("/admin")
    async def admin_view(session: Session = Depends(gate("admin")), service: DashboardService = Depends(get_service)):
        dashboard = await service.dashboard_for("admin", session)
        return dashboard.snapshot().model_dump(by_alias=True, mode="json")

    # -------------------------
    # Requester actions
    # -------------------------
    @app.post("/client/orders", status_code=201)
    async def create_order(body: OrderRequest, session: Session = Depends(gate("client")),
                           service: DashboardService = Depends(get_service)):
        dashboard = await service.dashboard_for("client", session)
        created = await dashboard.create_order(
            body.description,
            body.delivery_location,
            pickup_location=body.pickup_location,
            latitude=body.latitude,
            longitude=body.longitude,
        )
        return {"success": True, "order": created.to_wire() if created else None}

    # -------------------------
    # Driver actions
    # -------------------------
    @app.post("/driver/orders/{order_id}/status", status_code=202)
    async def update_status(order_id: str, status: str, session: Session = Depends(gate("driver")),
                            service: DashboardService = Depends(get_service)):
        try:
            target = parse_status(status)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown status '{status}'")
        dashboard = await service.dashboard_for("driver", session)
        await dashboard.update_order_status(order_id, target)
        return {"success": True, "order_id": order_id, "status": target.value}

    @app.post("/driver/orders/{order_id}/status/retry", status_code=202)
    async def retry_status(order_id: str, session: Session = Depends(gate("driver")),
                           service: DashboardService = Depends(get_service)):
        dashboard = await service.dashboard_for("driver", session)
        await dashboard.retry_status(order_id)
        return {"success": True, "order_id": order_id}

    @app.post("/driver/availability")
    async def toggle_availability(session: Session = Depends(gate("driver")),
                                  service: DashboardService = Depends(get_service)):
        dashboard = await service.dashboard_for("driver", session)
        online = await dashboard.toggle_availability()
        return {"success": True, "online": online}

    # -------------------------
    # Live dashboards
    # -------------------------
    @app.websocket("/ws/{view}")
    async def live_dashboard(websocket: WebSocket, view: str):
        service: DashboardService = app.state.service
        await websocket.accept()

        if view not in VIEW_ROLES:
            await websocket.close(code=4404)
            return

        token = websocket.query_params.get("token") or service.context.token
        try:
            session = check_access(token, VIEW_ROLES[view])
            dashboard = await service.open_live(view, session)
        except (CredentialMissing, RoleUnauthorized) as e:
            await websocket.send_json({"type": "redirect", "to": config.ENTRY_PATH, "reason": e.user_message})
            await websocket.close(code=4401 if isinstance(e, CredentialMissing) else 4403)
            return
        except ServiceError as e:
            await websocket.send_json({"type": "error", **error_payload(e)})
            await websocket.close(code=1011)
            return

        changed = asyncio.Event()
        dashboard.cache.add_listener(lambda kind, orders: changed.set())

        async def push_snapshots():
            while True:
                changed.clear()
                await websocket.send_json({"type": "snapshot", **dashboard.snapshot().model_dump(by_alias=True, mode="json")})
                await changed.wait()

        sender = asyncio.create_task(push_snapshots())
        try:
            while True:
                message = await websocket.receive_json()
                reply = await handle_action(dashboard, message)
                await websocket.send_json(reply)
        except WebSocketDisconnect:
            logger.info(f"[WS] {view} client disconnected")
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"[WS] {view} snapshot sender failed → {e}")
            await service.close_live(dashboard)

    return app


async def handle_action(dashboard: Dashboard, message: dict) -> dict:
    """Run one action sent over a live dashboard socket and describe the outcome."""
    action = message.get("action") if isinstance(message, dict) else None
    try:
        if action == "set_status" and isinstance(dashboard, DriverDashboard):
            await dashboard.update_order_status(message.get("order_id"), message.get("status"))
        elif action == "retry_status" and isinstance(dashboard, DriverDashboard):
            await dashboard.retry_status(message.get("order_id"))
        elif action == "toggle_availability" and isinstance(dashboard, DriverDashboard):
            await dashboard.toggle_availability()
        elif action == "create_order" and isinstance(dashboard, RequesterDashboard):
            body = OrderRequest.model_validate(message.get("order") or {})
            await dashboard.create_order(body.description, body.delivery_location,
                                         pickup_location=body.pickup_location,
                                         latitude=body.latitude, longitude=body.longitude)
        else:
            return {"type": "error", "success": False, "error": "UnknownAction",
                    "message": f"Action '{action}' is not available on this view"}
    except DeliverySyncError as e:
        return {"type": "error", **error_payload(e)}
    except ValueError as e:
        return {"type": "error", "success": False, "error": "InvalidRequest", "message": str(e)}
    return {"type": "ack", "success": True, "action": action}


app = create_app()
