from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, conint, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    # Wire format is camelCase, Python attributes stay snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DistanceMode(str, Enum):
    PER_KM = "PER_KM"
    ZONE_MATRIX = "ZONE_MATRIX"


class ZonePrice(CamelModel):
    origin_zone: str = Field(min_length=1)
    destination_zone: str = Field(min_length=1)
    price: conint(ge=0)


class CargoType(CamelModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    surcharge: conint(ge=0) = 0


class Facility(CamelModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    surcharge: conint(ge=0) = 0


class ServicePricingConfig(CamelModel):
    """Pricing rules of a service. Read as an immutable snapshot per order."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    distance_mode: DistanceMode
    per_km_rate: Optional[conint(ge=0)] = None
    zone_prices: List[ZonePrice] = Field(default_factory=list)
    cargo_types: List[CargoType] = Field(default_factory=list)
    facilities: List[Facility] = Field(default_factory=list)
    admin_fee: conint(ge=0) = 0
    talangan_enabled: bool = False
    talangan_max_amount: Optional[conint(ge=0)] = None
    max_distance_km: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_distance_mode(self):
        if self.distance_mode == DistanceMode.PER_KM and self.per_km_rate is None:
            raise ValueError("perKmRate is required when distanceMode is PER_KM")
        if self.distance_mode == DistanceMode.ZONE_MATRIX and not self.zone_prices:
            raise ValueError("zonePrices must not be empty when distanceMode is ZONE_MATRIX")
        return self


class PricingLocation(CamelModel):
    lat: float | None = Field(default=None, ge=-90, le=90)
    lon: float | None = Field(default=None, ge=-180, le=180)
    zone: str | None = None

    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None


class PricingDetails(CamelModel):
    """The subset of an order's details that affects its cost."""

    pickup: PricingLocation
    dropoff: PricingLocation
    distance_km: float | None = Field(default=None, ge=0)
    selected_cargo_id: str | None = None
    selected_facility_ids: List[str] = Field(default_factory=list)


class SurchargeLine(CamelModel):
    id: str
    name: str
    amount: int


class CostBreakdown(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    admin_fee: int = Field(ge=0)
    distance_fee: int = Field(ge=0)
    item_surcharges: List[SurchargeLine] = Field(default_factory=list)
    facility_surcharges: List[SurchargeLine] = Field(default_factory=list)
    total: int = Field(ge=0)
    calculation_method: DistanceMode
    distance_km: float | None = None
    applied_zone: str | None = None
    currency: str = "IDR"


# Request body for the calculation endpoint
class PriceCalculationRequest(CamelModel):
    pricing_config: ServicePricingConfig
    details: PricingDetails
    talangan_amount: Optional[conint(ge=0)] = None


# Response body
class PriceCalculationResponse(CamelModel):
    breakdown: CostBreakdown
    talangan_amount: int = 0
