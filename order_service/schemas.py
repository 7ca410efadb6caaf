from datetime import datetime, timezone
from enum import Enum
import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import ConfigDict, Field, TypeAdapter, conint, field_validator
from pydantic.alias_generators import to_camel

from pricing_service.schemas import CamelModel, CostBreakdown, PricingDetails, PricingLocation, ServicePricingConfig
from .state_machine import ActorType, OrderStatus

# Indonesian mobile numbers as accepted from the public order form
WA_NUMBER_PATTERN = re.compile(r"^(\+62|62|0)[0-9]{8,13}$")


class PaymentMethod(str, Enum):
    CASH = "CASH"
    TRANSFER = "TRANSFER"
    EWALLET = "EWALLET"


class PhotoType(str, Enum):
    PICKUP_PROOF = "PICKUP_PROOF"
    DELIVERY_PROOF = "DELIVERY_PROOF"
    CONDITION_PROOF = "CONDITION_PROOF"


class EventType(str, Enum):
    STATUS_UPDATE = "STATUS_UPDATE"
    PHOTO_UPLOADED = "PHOTO_UPLOADED"
    LOCATION_UPDATE = "LOCATION_UPDATE"
    NOTE_ADDED = "NOTE_ADDED"
    PAYMENT_UPDATE = "PAYMENT_UPDATE"
    ASSIGNMENT_CHANGED = "ASSIGNMENT_CHANGED"
    COST_UPDATED = "COST_UPDATED"


class ServiceConfig(CamelModel):
    """Service configuration, snapshotted onto each order at placement."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    service_alias: str = ""
    pricing: ServicePricingConfig
    requires_proof_photo: bool = False
    is_barang_penting_default: bool = False


# --- Event payloads, one variant per event type ---

class StatusUpdateData(CamelModel):
    type: Literal["STATUS_UPDATE"] = "STATUS_UPDATE"
    old_status: Optional[OrderStatus] = None
    new_status: OrderStatus
    reason: Optional[str] = None


class PhotoUploadedData(CamelModel):
    type: Literal["PHOTO_UPLOADED"] = "PHOTO_UPLOADED"
    photo_key: str = Field(min_length=1)
    photo_type: PhotoType
    caption: Optional[str] = Field(default=None, max_length=500)


class LocationUpdateData(CamelModel):
    type: Literal["LOCATION_UPDATE"] = "LOCATION_UPDATE"
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)
    heading: Optional[float] = Field(default=None, ge=0, lt=360)


class NoteAddedData(CamelModel):
    type: Literal["NOTE_ADDED"] = "NOTE_ADDED"
    note: str = Field(min_length=1, max_length=2000)
    author: ActorType

    @field_validator("note")
    @classmethod
    def note_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("note must not be blank")
        return value.strip()


class PaymentUpdateData(CamelModel):
    type: Literal["PAYMENT_UPDATE"] = "PAYMENT_UPDATE"
    old_amount: Optional[conint(ge=0)] = None
    new_amount: conint(ge=0)
    payment_method: Optional[PaymentMethod] = None


class AssignmentChangedData(CamelModel):
    type: Literal["ASSIGNMENT_CHANGED"] = "ASSIGNMENT_CHANGED"
    old_driver_id: Optional[str] = None
    new_driver_id: Optional[str] = None
    reason: Optional[str] = None


class CostUpdatedData(CamelModel):
    type: Literal["COST_UPDATED"] = "COST_UPDATED"
    old_cost: Optional[conint(ge=0)] = None
    new_cost: conint(ge=0)
    reason: Optional[str] = None


EventData = Annotated[
    Union[
        StatusUpdateData,
        PhotoUploadedData,
        LocationUpdateData,
        NoteAddedData,
        PaymentUpdateData,
        AssignmentChangedData,
        CostUpdatedData,
    ],
    Field(discriminator="type"),
]

event_data_adapter = TypeAdapter(EventData)


# --- Request bodies ---

class AddressIn(CamelModel):
    address: str = Field(min_length=1, max_length=500)
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lon: Optional[float] = Field(default=None, ge=-180, le=180)
    zone: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None

    def to_pricing_location(self) -> PricingLocation:
        return PricingLocation(lat=self.lat, lon=self.lon, zone=self.zone)


class OrderDetailsIn(CamelModel):
    pickup_address: AddressIn
    dropoff_address: AddressIn
    selected_muatan_id: Optional[str] = None
    selected_fasilitas_ids: List[str] = Field(default_factory=list)
    notes: Optional[str] = Field(default=None, max_length=2000)
    driver_instructions: Optional[str] = Field(default=None, max_length=2000)
    distance_km: Optional[float] = Field(default=None, ge=0)

    def to_pricing_details(self) -> PricingDetails:
        return PricingDetails(
            pickup=self.pickup_address.to_pricing_location(),
            dropoff=self.dropoff_address.to_pricing_location(),
            distance_km=self.distance_km,
            selected_cargo_id=self.selected_muatan_id,
            selected_facility_ids=self.selected_fasilitas_ids,
        )


def normalize_wa_number(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = re.sub(r"[\s\-()]", "", value)
    if not cleaned:
        return None
    if not WA_NUMBER_PATTERN.match(cleaned):
        raise ValueError("receiverWaNumber must be an Indonesian phone number")
    return cleaned


class PlaceOrderRequest(CamelModel):
    service_id: str = Field(min_length=1)
    orderer_identifier: str = Field(min_length=1, max_length=255)
    receiver_wa_number: Optional[str] = None
    details: OrderDetailsIn
    talangan_amount: Optional[conint(ge=0)] = None
    # None means "use the service default"
    is_barang_penting: Optional[bool] = None
    payment_method: PaymentMethod = PaymentMethod.CASH

    @field_validator("receiver_wa_number")
    @classmethod
    def check_wa_number(cls, value: Optional[str]) -> Optional[str]:
        return normalize_wa_number(value)


class CostEstimateRequest(CamelModel):
    service_id: str = Field(min_length=1)
    details: OrderDetailsIn
    talangan_amount: Optional[conint(ge=0)] = None


class TransitionRequest(CamelModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    # Version the caller last read; a mismatch is a conflict
    expected_version: Optional[int] = None


class AssignDriverRequest(TransitionRequest):
    driver_id: Optional[str] = None


class UpdateStatusRequest(TransitionRequest):
    status: OrderStatus
    photo_key: Optional[str] = None
    photo_caption: Optional[str] = Field(default=None, max_length=500)
    # Kept loose; a malformed location is dropped, never rejected
    location: Optional[Dict[str, Any]] = None


class AddNoteRequest(CamelModel):
    note: str = Field(min_length=1, max_length=2000)


class AddPhotoRequest(CamelModel):
    photo_key: str = Field(min_length=1)
    photo_type: PhotoType
    caption: Optional[str] = Field(default=None, max_length=500)


class UploadUrlRequest(CamelModel):
    filename: str = Field(min_length=1, max_length=255)
    content_type: str = Field(default="image/jpeg", max_length=100)


class OrderListFilters(CamelModel):
    status: Optional[OrderStatus] = None
    service_id: Optional[str] = None
    driver_id: Optional[str] = None
    # Inclusive bounds on created_at
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    page: conint(ge=1) = 1
    limit: conint(ge=1, le=100) = 10

    @field_validator("date_from", "date_to")
    @classmethod
    def as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class RecomputeCostRequest(CamelModel):
    distance_km: Optional[float] = Field(default=None, ge=0)
    reason: Optional[str] = Field(default=None, max_length=500)
    expected_version: Optional[int] = None


# --- Responses ---

class OrderEventOut(CamelModel):
    id: int
    timestamp: datetime
    event_type: EventType
    data: Dict[str, Any]
    actor_type: ActorType
    actor_id: Optional[str] = None


class OrderSummary(CamelModel):
    order_id: str
    service_id: str
    mitra_id: str
    driver_id: Optional[str] = None
    status: OrderStatus
    estimated_cost: int
    final_cost: Optional[int] = None
    talangan_amount: Optional[int] = None
    is_barang_penting: bool
    payment_method: PaymentMethod
    version: int
    created_at: datetime
    updated_at: datetime


class OrderDetailView(OrderSummary):
    orderer_identifier: str
    receiver_wa_number: Optional[str] = None
    details: Dict[str, Any]
    service_config: Dict[str, Any]
    events: List[OrderEventOut]


class OrderListPage(CamelModel):
    orders: List[OrderSummary]
    page: int
    limit: int
    has_more: bool


class AssignedOrderView(OrderSummary):
    """What a driver needs to work an order: addresses, contacts and the service rules."""

    orderer_identifier: str
    receiver_wa_number: Optional[str] = None
    details: Dict[str, Any]
    service_alias: str
    requires_proof_photo: bool


class TrackingView(CamelModel):
    order_id: str
    status: OrderStatus
    service_alias: str
    estimated_cost: int
    final_cost: Optional[int] = None
    talangan_amount: Optional[int] = None
    is_barang_penting: bool
    driver_assigned: bool
    pickup_address: str
    dropoff_address: str
    created_at: datetime
    updated_at: datetime
    events: List[OrderEventOut]


class PlaceOrderResult(CamelModel):
    order_id: str
    status: OrderStatus
    estimated_cost: int
    tracking_url: str
    cost_breakdown: CostBreakdown
    talangan_amount: int = 0
    receiver_notification_link: Optional[str] = None


class CostEstimateResult(CamelModel):
    cost_breakdown: CostBreakdown
    talangan_amount: int = 0


class UploadUrlResult(CamelModel):
    upload_url: str
    key: str
    content_type: str
    expires_in: int
    expires_at: datetime
