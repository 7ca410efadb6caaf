from . import schemas, config # Use relative import within the package
from decimal import Decimal, ROUND_CEILING
import logging
import math

logger = logging.getLogger(__name__)


class PricingError(Exception):
    """A cost could not be resolved from the service's pricing rules."""

    def __init__(self, message: str, code: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates in kilometres."""
    if lat1 == lat2 and lon1 == lon2:
        return 0.0
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return config.EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def resolve_distance_km(details: schemas.PricingDetails) -> float:
    """Supplied distance wins; otherwise derive it from the two coordinates."""
    if details.distance_km is not None:
        return details.distance_km
    if not (details.pickup.has_coordinates() and details.dropoff.has_coordinates()):
        raise PricingError(
            "Distance calculation requires coordinates for both pickup and dropoff addresses",
            "MISSING_COORDINATES",
            {
                "pickupHasCoords": details.pickup.has_coordinates(),
                "dropoffHasCoords": details.dropoff.has_coordinates(),
            },
        )
    distance = haversine_km(details.pickup.lat, details.pickup.lon, details.dropoff.lat, details.dropoff.lon)
    return round(distance, config.DISTANCE_DECIMALS)


def _ceil_money(amount: Decimal) -> int:
    return int(amount.to_integral_value(rounding=ROUND_CEILING))


def _normalize_zone(zone: str | None) -> str:
    return (zone or "").strip().upper()


def _distance_fee(pricing: schemas.ServicePricingConfig, details: schemas.PricingDetails):
    """Returns (fee, distance_km, applied_zone) for the configured distance mode."""
    if pricing.distance_mode == schemas.DistanceMode.PER_KM:
        distance_km = resolve_distance_km(details)
        if pricing.max_distance_km is not None and distance_km > pricing.max_distance_km:
            raise PricingError(
                f"Distance {distance_km:.2f} km exceeds service coverage limit of {pricing.max_distance_km} km",
                "DISTANCE_EXCEEDS_COVERAGE",
                {"calculatedDistance": distance_km, "maxDistance": pricing.max_distance_km},
            )
        # str() keeps the decimal digits the caller sees, e.g. 5.2 stays 5.2
        fee = _ceil_money(Decimal(str(distance_km)) * Decimal(pricing.per_km_rate))
        return fee, distance_km, None

    origin = _normalize_zone(details.pickup.zone)
    destination = _normalize_zone(details.dropoff.zone)
    if not origin or not destination:
        raise PricingError(
            "Zone pricing requires a zone for both pickup and dropoff addresses",
            "MISSING_ZONE",
            {"pickupZone": origin or None, "dropoffZone": destination or None},
        )
    for zone_price in pricing.zone_prices:
        if (_normalize_zone(zone_price.origin_zone), _normalize_zone(zone_price.destination_zone)) == (origin, destination):
            return zone_price.price, None, f"{origin} -> {destination}"
    # No nearest-match fallback: an unknown route is rejected
    raise PricingError(
        f"No zone pricing found for route: {origin} -> {destination}",
        "ZONE_PRICE_NOT_FOUND",
        {
            "pickupZone": origin,
            "dropoffZone": destination,
            "availableZones": [f"{z.origin_zone} -> {z.destination_zone}" for z in pricing.zone_prices],
        },
    )


def _cargo_surcharges(pricing: schemas.ServicePricingConfig, details: schemas.PricingDetails) -> list[schemas.SurchargeLine]:
    if details.selected_cargo_id is None:
        return []
    cargo_by_id = {cargo.id: cargo for cargo in pricing.cargo_types}
    cargo = cargo_by_id.get(details.selected_cargo_id)
    if cargo is None:
        raise PricingError(
            f"Selected cargo type '{details.selected_cargo_id}' is not available for this service",
            "INVALID_CARGO_SELECTION",
            {"selectedCargo": details.selected_cargo_id, "availableCargo": list(cargo_by_id)},
        )
    return [schemas.SurchargeLine(id=cargo.id, name=cargo.name, amount=cargo.surcharge)]


def _facility_surcharges(pricing: schemas.ServicePricingConfig, details: schemas.PricingDetails) -> list[schemas.SurchargeLine]:
    facility_by_id = {facility.id: facility for facility in pricing.facilities}
    unknown = [fid for fid in details.selected_facility_ids if fid not in facility_by_id]
    if unknown:
        raise PricingError(
            f"Selected facilities not available for this service: {', '.join(unknown)}",
            "INVALID_FACILITY_SELECTION",
            {"invalidFacilities": unknown, "availableFacilities": list(facility_by_id)},
        )
    if len(set(details.selected_facility_ids)) != len(details.selected_facility_ids):
        raise PricingError(
            "A facility may only be selected once",
            "INVALID_FACILITY_SELECTION",
            {"selectedFacilities": details.selected_facility_ids},
        )
    return [
        schemas.SurchargeLine(id=fid, name=facility_by_id[fid].name, amount=facility_by_id[fid].surcharge)
        for fid in details.selected_facility_ids
    ]


def compute_cost(pricing: schemas.ServicePricingConfig, details: schemas.PricingDetails) -> schemas.CostBreakdown:
    """
    Computes the delivery fee breakdown for an order.

    This is the only place a cost is derived: estimates, recomputations and
    final costs all go through it. The result depends on nothing but the two
    arguments, so equal inputs always give an equal breakdown.
    """
    distance_fee, distance_km, applied_zone = _distance_fee(pricing, details)
    item_surcharges = _cargo_surcharges(pricing, details)
    facility_surcharges = _facility_surcharges(pricing, details)

    total = pricing.admin_fee + distance_fee
    total += sum(line.amount for line in item_surcharges)
    total += sum(line.amount for line in facility_surcharges)

    logger.debug(
        f"Cost computed ({pricing.distance_mode.value}): admin={pricing.admin_fee}, distance={distance_fee}, "
        f"cargo={len(item_surcharges)}, facilities={len(facility_surcharges)}, total={total}"
    )

    return schemas.CostBreakdown(
        admin_fee=pricing.admin_fee,
        distance_fee=distance_fee,
        item_surcharges=item_surcharges,
        facility_surcharges=facility_surcharges,
        total=total,
        calculation_method=pricing.distance_mode,
        distance_km=distance_km,
        applied_zone=applied_zone,
        currency=config.CURRENCY,
    )


def validate_talangan(pricing: schemas.ServicePricingConfig, talangan_amount: int | None) -> None:
    """Rejects an advance payment the service does not allow. Never clamps."""
    if not talangan_amount or talangan_amount <= 0:
        return
    if not pricing.talangan_enabled:
        raise PricingError("Talangan feature is not enabled for this service", "TALANGAN_NOT_ENABLED")
    if pricing.talangan_max_amount is not None and talangan_amount > pricing.talangan_max_amount:
        raise PricingError(
            f"Talangan amount {talangan_amount} exceeds maximum limit of {pricing.talangan_max_amount}",
            "TALANGAN_EXCEEDS_LIMIT",
            {"requestedAmount": talangan_amount, "maxAmount": pricing.talangan_max_amount},
        )


def calculate_price(request: schemas.PriceCalculationRequest) -> schemas.PriceCalculationResponse:
    validate_talangan(request.pricing_config, request.talangan_amount)
    breakdown = compute_cost(request.pricing_config, request.details)
    logger.info(f"Price calculated - Method: {breakdown.calculation_method.value}, Total: {breakdown.total}")
    return schemas.PriceCalculationResponse(breakdown=breakdown, talangan_amount=request.talangan_amount or 0)
