# schemas.py
from enum import Enum
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Identifier = Union[int, str]


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


# Status names the order service uses on the wire
STATUS_ALIASES = {
    "PENDIENTE": OrderStatus.PENDING,
    "ASIGNADO": OrderStatus.ASSIGNED,
    "EN_RUTA": OrderStatus.IN_TRANSIT,
    "ENTREGADO": OrderStatus.DELIVERED,
    "CANCELADO": OrderStatus.CANCELLED,
}


def parse_status(value: Any) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    key = str(value).strip().upper()
    if key in STATUS_ALIASES:
        return STATUS_ALIASES[key]
    return OrderStatus(key)


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DriverSummary(WireModel):
    id: Identifier
    status: Optional[str] = None


class VehicleSummary(WireModel):
    id: Identifier
    brand: Optional[str] = None
    model: Optional[str] = None
    plate: Optional[str] = None
    driver: Optional[DriverSummary] = None


class Order(WireModel):
    id: Identifier
    description: str = ""
    pickup_location: Optional[str] = Field(default=None, alias="pickupLocation")
    delivery_location: str = Field(default="", alias="deliveryLocation")
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: OrderStatus = OrderStatus.PENDING
    assigned_vehicle_id: Optional[Identifier] = Field(default=None, alias="assignedVehicleId")
    client_id: Optional[Identifier] = Field(default=None, alias="clientId")
    vehicle: Optional[VehicleSummary] = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalise_status(cls, value):
        return parse_status(value)

    @property
    def vehicle_id(self) -> Optional[Identifier]:
        """Bound vehicle, whether it came as a plain reference or a joined summary."""
        if self.assigned_vehicle_id is not None:
            return self.assigned_vehicle_id
        if self.vehicle is not None:
            return self.vehicle.id
        return None

    @property
    def is_consistent(self) -> bool:
        if self.status in (OrderStatus.ASSIGNED, OrderStatus.IN_TRANSIT):
            return self.vehicle_id is not None
        if self.status == OrderStatus.PENDING:
            return self.vehicle_id is None
        return True

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class OrderDraft(WireModel):
    client_id: Optional[Identifier] = Field(default=None, alias="clientId")
    description: str
    pickup_location: Optional[str] = Field(default=None, alias="pickupLocation")
    delivery_location: str = Field(alias="deliveryLocation")
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class DriverProfile(WireModel):
    id: Identifier
    user_id: Optional[Identifier] = None
    name: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_wire(cls, data: dict) -> "DriverProfile":
        # The fleet service spells the correlation field both ways
        user_id = data.get("userId")
        if user_id is None:
            user_id = data.get("user_id")
        return cls(id=data["id"], user_id=user_id, name=data.get("name"), status=data.get("status"))


class Vehicle(WireModel):
    id: Identifier
    brand: Optional[str] = None
    model: Optional[str] = None
    plate: Optional[str] = None


class Session(BaseModel):
    role: str
    display_name: Optional[str] = None
    subject_id: Optional[Identifier] = None
    token: str


class LoginResult(BaseModel):
    token: str


class DashboardSnapshot(BaseModel):
    view: str
    role: str
    orders: List[Order]
    summary: dict = {}
