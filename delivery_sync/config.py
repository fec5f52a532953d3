# config.py
import os
from dotenv import load_dotenv

load_dotenv()


def _csv(value: str):
    return [part.strip() for part in value.split(",") if part.strip()]


def _pairs(value: str):
    return dict(part.split(":", 1) for part in _csv(value) if ":" in part)


# --------------------------------------------------
# Collaborator services
# --------------------------------------------------
ORDER_SERVICE_URL = os.getenv("ORDER_SERVICE_URL", "http://127.0.0.1:8083")
FLEET_SERVICE_URL = os.getenv("FLEET_SERVICE_URL", "http://127.0.0.1:8082")
QUERY_GATEWAY_URL = os.getenv("QUERY_GATEWAY_URL", "http://127.0.0.1:8085/graphql")
PUSH_CHANNEL_URL = os.getenv("PUSH_CHANNEL_URL", "http://127.0.0.1:3001")
# "socketio" or "websocket"; empty picks by URL scheme (ws:// and wss:// are plain websockets)
PUSH_TRANSPORT = os.getenv("PUSH_TRANSPORT", "")

HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
HTTP_RETRIES = int(os.getenv("HTTP_RETRIES", "3"))

# Status names written to the order service, keyed by canonical status
STATUS_WIRE_NAMES = _pairs(os.getenv(
    "STATUS_WIRE_NAMES",
    "PENDING:PENDIENTE,ASSIGNED:ASIGNADO,IN_TRANSIT:EN_RUTA,DELIVERED:ENTREGADO,CANCELLED:CANCELADO",
))

# Driver availability as the fleet service spells it
DRIVER_AVAILABLE_STATUS = os.getenv("DRIVER_AVAILABLE_STATUS", "DISPONIBLE")
DRIVER_UNAVAILABLE_STATUS = os.getenv("DRIVER_UNAVAILABLE_STATUS", "NO_DISPONIBLE")

# Push frames whose type is one of these carry a full order record
ORDER_EVENT_TYPES = set(_csv(os.getenv(
    "ORDER_EVENT_TYPES",
    "orders_update,order.changed,order.updated,order.created",
)))

# --------------------------------------------------
# Session
# --------------------------------------------------
SESSION_STORE_PATH = os.getenv("SESSION_STORE_PATH", "./local_storage/session.json")

ROLE_CLAIM_PRECEDENCE = _csv(os.getenv("ROLE_CLAIM_PRECEDENCE", "role,roles,authorities"))
SUBJECT_CLAIM_PRECEDENCE = _csv(os.getenv("SUBJECT_CLAIM_PRECEDENCE", "userId,user_id,id,sub"))
DEFAULT_ROLE = os.getenv("DEFAULT_ROLE", "requester")

REQUESTER_ROLES = set(_csv(os.getenv("REQUESTER_ROLES", "requester,client,cliente")))
DRIVER_ROLES = set(_csv(os.getenv("DRIVER_ROLES", "driver,repartidor")))
SUPERVISOR_ROLES = set(_csv(os.getenv("SUPERVISOR_ROLES", "supervisor,admin,manager,gerente")))

ENTRY_PATH = os.getenv("ENTRY_PATH", "/")

# --------------------------------------------------
# Orchestration
# --------------------------------------------------
RECONCILE_DELAY_SECONDS = float(os.getenv("RECONCILE_DELAY_SECONDS", "0.5"))

# Dashboards kept mounted for HTTP navigation; the least recently used is unmounted past this
MAX_HTTP_DASHBOARDS = int(os.getenv("MAX_HTTP_DASHBOARDS", "32"))

# Fallback delivery point when a draft carries no coordinates (Quito)
DEFAULT_LATITUDE = float(os.getenv("DEFAULT_LATITUDE", "-0.1807"))
DEFAULT_LONGITUDE = float(os.getenv("DEFAULT_LONGITUDE", "-78.4678"))
