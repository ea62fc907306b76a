"""Pydantic schemas for the HTTP API.

Request models validate and normalize incoming payloads; response models
are built from the frozen domain snapshots with ``from_attributes``.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import BoxStatus, OrderStatus, PortStatus


class BoxCreate(BaseModel):
    """Request body for creating a box.

    Attributes:
        name: Display name, surrounding whitespace stripped.
        capacity: Number of ports to provision.
        latitude: Latitude in decimal degrees.
        longitude: Longitude in decimal degrees.
        owner_id: Owning operator; defaults to the caller.
        status: Initial operational status.
    """

    name: str = Field(min_length=1, max_length=120)
    capacity: int = Field(ge=1)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    owner_id: Optional[str] = Field(default=None, max_length=64)
    status: BoxStatus = BoxStatus.ACTIVE

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v2 = v.strip()
        if not v2:
            raise ValueError("Box name is blank")
        return v2


class BoxUpdate(BaseModel):
    """Partial update of a box; omitted fields are left unchanged."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    status: Optional[BoxStatus] = None
    capacity: Optional[int] = Field(default=None, ge=1)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v2 = v.strip()
        if not v2:
            raise ValueError("Box name is blank")
        return v2


class BoxOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    capacity: int
    occupied_count: int
    latitude: float
    longitude: float
    status: BoxStatus
    owner_id: str
    created_at: datetime
    updated_at: datetime


class PortOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    box_id: uuid.UUID
    number: int
    status: PortStatus
    price_cents: int
    tenant_id: Optional[str] = None
    service_plan: Optional[dict] = None
    version: int
    created_at: datetime
    updated_at: datetime


class OccupancyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    box_id: uuid.UUID
    capacity: int
    occupied_count: int
    by_status: dict[str, int]


class PriceIn(BaseModel):
    """Request body for setting a port price.

    Attributes:
        price_cents: Monthly price in integer cents. Negative values are
            passed through so the engine can answer ``INVALID_PRICE``.
    """

    price_cents: int


class MaintenanceIn(BaseModel):
    enabled: bool


class ServicePlanIn(BaseModel):
    plan: Optional[dict] = None


class OrderCreate(BaseModel):
    """Request body for opening a rental order.

    Attributes:
        port_id: Port being requested.
        price_cents: Monthly price in cents; the port's price when omitted.
        installation_fee_cents: One-time installation fee in cents.
        note: Optional remark kept on the order as an operator note.
    """

    port_id: uuid.UUID
    price_cents: Optional[int] = None
    installation_fee_cents: int = 0
    note: Optional[str] = Field(default=None, max_length=4000)


class TransitionIn(BaseModel):
    """Optional body of signature, advance and cancel requests."""

    note: Optional[str] = Field(default=None, max_length=4000)


class DecisionIn(TransitionIn):
    approve: bool


class ScheduleIn(BaseModel):
    """Request body for scheduling an installation.

    Attributes:
        scheduled_at: Installation date. Naive values are read as UTC.
        note: Optional operator remark.
    """

    scheduled_at: datetime
    note: Optional[str] = Field(default=None, max_length=4000)


class NoteIn(BaseModel):
    content: str = Field(max_length=4000)


class NoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: uuid.UUID
    author_id: str
    content: str
    is_system: bool
    created_at: datetime


class OrderOut(BaseModel):
    """Full order view, notes embedded oldest first."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    port_id: uuid.UUID
    box_id: uuid.UUID
    requester_id: str
    owner_id: str
    status: OrderStatus
    price_cents: int
    installation_fee_cents: int
    signed_by_requester: bool
    signed_by_owner: bool
    scheduled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    notes: list[NoteOut] = []
