"""
Order lifecycle orchestration.

Every order change runs as one transaction: read the order, authorize the
actor, validate through the state machine, recompute cost where it applies,
write the row with a version check and append the events. HTTP handlers talk
to nothing else.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote
import logging

import pydantic
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from pricing_service import logic as pricing
from . import config, crud, event_log, models, schemas, state_machine
from .cache import TrackingCache
from .errors import AuthorizationError, ConflictError, InternalError, NotFound, ValidationError
from .state_machine import Actor, ActorType, OrderStatus
from .storage import ProofStorage, build_proof_key, proof_prefix

logger = logging.getLogger(__name__)

TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError)

PendingEvent = Tuple[Any, Actor]


@dataclass
class ActionPayload:
    driver_id: Optional[str] = None
    photo_key: Optional[str] = None
    photo_caption: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    expected_version: Optional[int] = None


def photo_type_for(status: OrderStatus) -> schemas.PhotoType:
    if status == OrderStatus.PICKED_UP:
        return schemas.PhotoType.PICKUP_PROOF
    if status == OrderStatus.DELIVERED:
        return schemas.PhotoType.DELIVERY_PROOF
    return schemas.PhotoType.CONDITION_PROOF


def wa_link(number: str, message: str) -> str:
    digits = number.lstrip("+")
    if digits.startswith("0"):
        digits = "62" + digits[1:]
    return f"https://wa.me/{digits}?text={quote(message)}"


def to_summary(order: models.Order) -> schemas.OrderSummary:
    return schemas.OrderSummary(
        order_id=order.id,
        service_id=order.service_id,
        mitra_id=order.mitra_id,
        driver_id=order.driver_id,
        status=order.status,
        estimated_cost=order.estimated_cost,
        final_cost=order.final_cost,
        talangan_amount=order.talangan_amount,
        is_barang_penting=order.is_barang_penting,
        payment_method=order.payment_method,
        version=order.version,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


class OrderLifecycleService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        cache: Optional[TrackingCache] = None,
        storage: Optional[ProofStorage] = None,
        timeout_seconds: float = config.TRANSITION_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.storage = storage
        self.timeout_seconds = timeout_seconds

    # --- plumbing ---

    async def _run(self, operation, description: str):
        """Runs a unit of work under the timeout, retrying once on a transient storage error."""
        for attempt in (1, 2):
            try:
                return await asyncio.wait_for(operation(), timeout=self.timeout_seconds)
            except TRANSIENT_DB_ERRORS as e:
                if attempt == 2:
                    logger.error(f"Storage failure during {description} after retry: {e}")
                    raise InternalError("Storage is temporarily unavailable", code="STORAGE_ERROR") from e
                logger.warning(f"Transient storage error during {description}, retrying once: {e}")
            except asyncio.TimeoutError as e:
                logger.error(f"{description} timed out after {self.timeout_seconds}s, rolled back")
                raise InternalError("Order update timed out", code="TRANSITION_TIMEOUT") from e

    async def _invalidate(self, order_id: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate(order_id)

    @staticmethod
    def _authorize(order: models.Order, actor: Actor) -> None:
        owner = {
            ActorType.MITRA: order.mitra_id,
            ActorType.DRIVER: order.driver_id,
            ActorType.USER: order.orderer_identifier,
        }
        if actor.type == ActorType.SYSTEM:
            return
        if owner[actor.type] is None or owner[actor.type] != actor.id:
            raise AuthorizationError(
                f"{actor.type.value} {actor.id} has no access to order {order.id}",
                details={"orderId": order.id, "actorType": actor.type.value},
            )

    @staticmethod
    def _snapshot(order: models.Order) -> schemas.ServiceConfig:
        return schemas.ServiceConfig.model_validate(order.service_config_snapshot)

    @staticmethod
    def _details(order: models.Order) -> schemas.OrderDetailsIn:
        return schemas.OrderDetailsIn.model_validate(order.details_json)

    @staticmethod
    def _check_photo_key(order: models.Order, photo_key: str) -> None:
        prefix = proof_prefix(order.mitra_id, order.id)
        if not photo_key.startswith(prefix) or ".." in photo_key:
            raise ValidationError(
                "Photo key does not belong to this order",
                code="INVALID_PHOTO_KEY",
                details={"expectedPrefix": prefix},
            )

    @staticmethod
    def _check_open(order: models.Order) -> None:
        if state_machine.is_terminal(order.status):
            raise ValidationError(f"Order is already {order.status}", code="ORDER_FINALIZED")

    @staticmethod
    def _check_version(order: models.Order, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != order.version:
            raise ConflictError(
                "Order was modified since it was read, reload and retry",
                details={"orderId": order.id, "expectedVersion": expected_version, "currentVersion": order.version},
            )

    async def _check_driver(self, session, order: models.Order, driver_id: str) -> None:
        driver = await crud.get_driver(session, driver_id)
        if driver is None or driver.mitra_id != order.mitra_id:
            raise NotFound(f"Driver {driver_id} not found", code="DRIVER_NOT_FOUND")
        if not driver.is_active:
            raise ValidationError(f"Driver {driver_id} is not active", code="DRIVER_INACTIVE")
        if not await crud.is_driver_qualified(session, driver_id, order.service_id):
            raise ValidationError(
                f"Driver {driver_id} is not assigned to service {order.service_id}",
                code="DRIVER_NOT_QUALIFIED",
            )

    @staticmethod
    def _location_event(location: Optional[Dict[str, Any]], order_id: str):
        if not location:
            return None
        try:
            return schemas.LocationUpdateData.model_validate(location)
        except pydantic.ValidationError as e:
            # Geolocation is best-effort and never blocks a transition
            logger.warning(f"Ignoring malformed location for order {order_id}: {e.error_count()} error(s)")
            return None

    async def _append_all(self, session, order_id: str, events: List[PendingEvent]) -> None:
        timestamp = models.utcnow()
        for data, actor in events:
            await event_log.append(session, order_id, data, actor.type, actor.id, timestamp=timestamp)

    # --- placement & estimates ---

    async def estimate_cost(self, request: schemas.CostEstimateRequest) -> schemas.CostEstimateResult:
        async def _estimate():
            async with self.session_factory() as session:
                service = await crud.get_active_service(session, request.service_id)
                service_config = schemas.ServiceConfig.model_validate(service.config_json)
            pricing.validate_talangan(service_config.pricing, request.talangan_amount)
            breakdown = pricing.compute_cost(service_config.pricing, request.details.to_pricing_details())
            return schemas.CostEstimateResult(cost_breakdown=breakdown, talangan_amount=request.talangan_amount or 0)

        return await self._run(_estimate, f"cost estimate for service {request.service_id}")

    async def place_order(self, request: schemas.PlaceOrderRequest) -> schemas.PlaceOrderResult:
        async def _place():
            async with self.session_factory() as session:
                async with session.begin():
                    service = await crud.get_active_service(session, request.service_id)
                    service_config = schemas.ServiceConfig.model_validate(service.config_json)

                    is_barang_penting = request.is_barang_penting
                    if is_barang_penting is None:
                        is_barang_penting = service_config.is_barang_penting_default
                    talangan = request.talangan_amount or 0
                    if (is_barang_penting or talangan > 0) and not request.receiver_wa_number:
                        raise ValidationError(
                            "receiverWaNumber is required for barang penting or talangan orders",
                            code="RECEIVER_WA_REQUIRED",
                        )

                    pricing.validate_talangan(service_config.pricing, talangan)
                    breakdown = pricing.compute_cost(service_config.pricing, request.details.to_pricing_details())

                    order = await crud.create_order(
                        session,
                        service_id=service.id,
                        mitra_id=service.mitra_id,
                        orderer_identifier=request.orderer_identifier,
                        receiver_wa_number=request.receiver_wa_number,
                        status=OrderStatus.PENDING.value,
                        details_json=request.details.model_dump(mode="json", by_alias=True),
                        service_config_snapshot=service_config.model_dump(mode="json", by_alias=True),
                        estimated_cost=breakdown.total,
                        talangan_amount=talangan or None,
                        is_barang_penting=is_barang_penting,
                        payment_method=request.payment_method.value,
                        version=1,
                    )
                    placer = Actor(ActorType.USER, request.orderer_identifier)
                    events: List[PendingEvent] = [
                        (schemas.StatusUpdateData(new_status=OrderStatus.PENDING, reason="Order placed"), placer),
                    ]
                    if talangan > 0:
                        events.append((
                            schemas.PaymentUpdateData(new_amount=talangan, payment_method=request.payment_method),
                            placer,
                        ))
                    await self._append_all(session, order.id, events)
                return order, breakdown, service_config

        order, breakdown, service_config = await self._run(_place, f"placement for service {request.service_id}")
        tracking_url = f"{config.TRACKING_BASE_URL.rstrip('/')}/{order.id}"
        logger.info(f"Order {order.id} placed for service {order.service_id}, estimated cost {order.estimated_cost}")

        notification_link = None
        if order.receiver_wa_number:
            alias = service_config.service_alias or "our courier"
            notification_link = wa_link(
                order.receiver_wa_number,
                f"A delivery from {alias} is on its way to you. Track it here: {tracking_url}",
            )
        return schemas.PlaceOrderResult(
            order_id=order.id,
            status=order.status,
            estimated_cost=order.estimated_cost,
            tracking_url=tracking_url,
            cost_breakdown=breakdown,
            talangan_amount=order.talangan_amount or 0,
            receiver_notification_link=notification_link,
        )

    # --- transitions ---

    async def apply_action(
        self,
        order_id: str,
        actor: Actor,
        new_status: OrderStatus,
        payload: Optional[ActionPayload] = None,
    ) -> schemas.OrderSummary:
        """Moves an order to ``new_status`` on behalf of ``actor``; all-or-nothing."""
        payload = payload or ActionPayload()
        new_status = OrderStatus(new_status)

        async def _transition():
            async with self.session_factory() as session:
                async with session.begin():
                    order = await crud.get_order(session, order_id)
                    self._authorize(order, actor)
                    self._check_version(order, payload.expected_version)
                    current = OrderStatus(order.status)
                    snapshot = self._snapshot(order)

                    state_machine.check_transition(
                        current,
                        new_status,
                        actor.type,
                        driver_id=payload.driver_id,
                        photo_key=payload.photo_key,
                        proof_required=snapshot.requires_proof_photo,
                        talangan_amount=order.talangan_amount,
                    )
                    if payload.photo_key:
                        self._check_photo_key(order, payload.photo_key)

                    changes: Dict[str, Any] = {"status": new_status.value}
                    events: List[PendingEvent] = [
                        (schemas.StatusUpdateData(old_status=current, new_status=new_status, reason=payload.reason), actor),
                    ]

                    if new_status == OrderStatus.DRIVER_ASSIGNED:
                        await self._check_driver(session, order, payload.driver_id)
                        changes["driver_id"] = payload.driver_id
                        events.append((
                            schemas.AssignmentChangedData(
                                old_driver_id=order.driver_id, new_driver_id=payload.driver_id, reason=payload.reason,
                            ),
                            actor,
                        ))

                    if new_status == OrderStatus.REJECTED_BY_DRIVER:
                        # Re-queue straight away so the mitra can pick another driver
                        system = Actor(ActorType.SYSTEM, "system")
                        requeued = OrderStatus.PENDING_DRIVER_ASSIGNMENT
                        state_machine.check_transition(new_status, requeued, ActorType.SYSTEM)
                        changes["status"] = requeued.value
                        changes["driver_id"] = None
                        events.append((
                            schemas.StatusUpdateData(
                                old_status=new_status, new_status=requeued, reason="Re-queued after driver rejection",
                            ),
                            system,
                        ))
                        events.append((
                            schemas.AssignmentChangedData(
                                old_driver_id=order.driver_id, new_driver_id=None, reason=payload.reason or "Driver rejected",
                            ),
                            system,
                        ))

                    if new_status == OrderStatus.DELIVERED:
                        final = pricing.compute_cost(snapshot.pricing, self._details(order).to_pricing_details())
                        changes["final_cost"] = final.total

                    if new_status == OrderStatus.REFUNDED:
                        events.append((
                            schemas.PaymentUpdateData(
                                old_amount=order.talangan_amount, new_amount=0, payment_method=order.payment_method,
                            ),
                            actor,
                        ))

                    if payload.photo_key:
                        events.append((
                            schemas.PhotoUploadedData(
                                photo_key=payload.photo_key,
                                photo_type=photo_type_for(new_status),
                                caption=payload.photo_caption,
                            ),
                            actor,
                        ))

                    location = self._location_event(payload.location, order.id)
                    if location is not None:
                        events.append((location, actor))

                    order = await crud.update_order_versioned(session, order, changes)
                    await self._append_all(session, order.id, events)
                return order

        order = await self._run(_transition, f"transition of order {order_id} to {new_status.value}")
        logger.info(f"Order {order_id} moved to {order.status} by {actor.type.value}:{actor.id} (v{order.version})")
        await self._invalidate(order_id)
        return to_summary(order)

    # --- side channel updates ---

    async def add_note(self, order_id: str, actor: Actor, note: str) -> schemas.OrderEventOut:
        async def _note():
            async with self.session_factory() as session:
                async with session.begin():
                    order = await crud.get_order(session, order_id)
                    self._authorize(order, actor)
                    data = {"type": "NOTE_ADDED", "note": note, "author": actor.type.value}
                    event = await event_log.append(session, order.id, data, actor.type, actor.id)
                return event_log.to_event_out(event)

        result = await self._run(_note, f"note on order {order_id}")
        await self._invalidate(order_id)
        return result

    async def add_photo(
        self,
        order_id: str,
        actor: Actor,
        photo_key: str,
        photo_type: schemas.PhotoType,
        caption: Optional[str] = None,
    ) -> schemas.OrderEventOut:
        async def _photo():
            async with self.session_factory() as session:
                async with session.begin():
                    order = await crud.get_order(session, order_id)
                    self._authorize(order, actor)
                    self._check_open(order)
                    self._check_photo_key(order, photo_key)
                    data = schemas.PhotoUploadedData(photo_key=photo_key, photo_type=photo_type, caption=caption)
                    event = await event_log.append(session, order.id, data, actor.type, actor.id)
                return event_log.to_event_out(event)

        result = await self._run(_photo, f"photo on order {order_id}")
        await self._invalidate(order_id)
        return result

    async def recompute_cost(
        self,
        order_id: str,
        actor: Actor,
        distance_km: Optional[float] = None,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> schemas.OrderSummary:
        """Re-prices a live order from its own config snapshot. Mitra only."""
        if actor.type != ActorType.MITRA:
            raise AuthorizationError("Only the owning mitra can recompute an order's cost")

        async def _recompute():
            async with self.session_factory() as session:
                async with session.begin():
                    order = await crud.get_order(session, order_id)
                    self._authorize(order, actor)
                    self._check_version(order, expected_version)
                    if state_machine.is_terminal(order.status):
                        raise ValidationError(
                            f"Cost cannot be recomputed once the order is {order.status}",
                            code="ORDER_FINALIZED",
                        )
                    details = self._details(order)
                    if distance_km is not None:
                        details = details.model_copy(update={"distance_km": distance_km})
                    breakdown = pricing.compute_cost(self._snapshot(order).pricing, details.to_pricing_details())
                    old_cost = order.estimated_cost
                    order = await crud.update_order_versioned(session, order, {
                        "estimated_cost": breakdown.total,
                        "details_json": details.model_dump(mode="json", by_alias=True),
                    })
                    data = schemas.CostUpdatedData(old_cost=old_cost, new_cost=breakdown.total, reason=reason)
                    await event_log.append(session, order.id, data, actor.type, actor.id)
                return order

        order = await self._run(_recompute, f"cost recompute of order {order_id}")
        logger.info(f"Order {order_id} cost recomputed to {order.estimated_cost}")
        await self._invalidate(order_id)
        return to_summary(order)

    async def request_upload_url(
        self,
        order_id: str,
        actor: Actor,
        filename: str,
        content_type: str,
    ) -> schemas.UploadUrlResult:
        if self.storage is None:
            raise InternalError("Proof storage is not configured", code="STORAGE_NOT_CONFIGURED")

        async def _lookup():
            async with self.session_factory() as session:
                return await crud.get_order(session, order_id)

        order = await self._run(_lookup, f"upload URL for order {order_id}")
        if actor.type != ActorType.DRIVER:
            raise AuthorizationError("Only the assigned driver can upload proof photos")
        self._authorize(order, actor)
        self._check_open(order)

        key = build_proof_key(order.mitra_id, order.id, filename)
        return schemas.UploadUrlResult(**self.storage.create_upload_url(key, content_type))

    # --- reads ---

    async def get_order(self, order_id: str, actor: Actor) -> schemas.OrderDetailView:
        """Owner view with the full audit trail, oldest first."""
        async def _read():
            async with self.session_factory() as session:
                order = await crud.get_order(session, order_id)
                self._authorize(order, actor)
                events = await event_log.list_events(session, order_id)
                return order, events

        order, events = await self._run(_read, f"read of order {order_id}")
        return schemas.OrderDetailView(
            **to_summary(order).model_dump(),
            orderer_identifier=order.orderer_identifier,
            receiver_wa_number=order.receiver_wa_number,
            details=order.details_json,
            service_config=order.service_config_snapshot,
            events=[event_log.to_event_out(event) for event in events],
        )

    async def list_orders(self, actor: Actor, filters: schemas.OrderListFilters) -> schemas.OrderListPage:
        if actor.type != ActorType.MITRA:
            raise AuthorizationError("Only a mitra can list its orders")

        async def _list():
            async with self.session_factory() as session:
                return await crud.list_orders_for_mitra(session, actor.id, filters)

        orders, has_more = await self._run(_list, f"order listing for mitra {actor.id}")
        return schemas.OrderListPage(
            orders=[to_summary(order) for order in orders],
            page=filters.page,
            limit=filters.limit,
            has_more=has_more,
        )

    async def list_assigned(self, actor: Actor) -> List[schemas.AssignedOrderView]:
        """A driver's open work, most recently touched first."""
        if actor.type != ActorType.DRIVER:
            raise AuthorizationError("Only a driver can list assigned orders")

        async def _list():
            async with self.session_factory() as session:
                return await crud.list_orders_for_driver(session, actor.id, state_machine.DRIVER_ACTIVE_STATUSES)

        orders = await self._run(_list, f"assigned orders for driver {actor.id}")
        views = []
        for order in orders:
            snapshot = self._snapshot(order)
            views.append(schemas.AssignedOrderView(
                **to_summary(order).model_dump(),
                orderer_identifier=order.orderer_identifier,
                receiver_wa_number=order.receiver_wa_number,
                details=order.details_json,
                service_alias=snapshot.service_alias,
                requires_proof_photo=snapshot.requires_proof_photo,
            ))
        return views

    async def get_tracking(self, order_id: str) -> dict:
        """Public timeline, newest first. Served from the cache when possible."""
        if self.cache is not None:
            cached = await self.cache.get(order_id)
            if cached is not None:
                logger.debug(f"Tracking cache hit for order {order_id}")
                return cached

        async def _read():
            async with self.session_factory() as session:
                order = await crud.get_order(session, order_id)
                events = await event_log.list_events(session, order_id, descending=True)
                return order, events

        order, events = await self._run(_read, f"tracking of order {order_id}")
        details = self._details(order)
        view = schemas.TrackingView(
            order_id=order.id,
            status=order.status,
            service_alias=self._snapshot(order).service_alias,
            estimated_cost=order.estimated_cost,
            final_cost=order.final_cost,
            talangan_amount=order.talangan_amount,
            is_barang_penting=order.is_barang_penting,
            driver_assigned=order.driver_id is not None,
            pickup_address=details.pickup_address.address,
            dropoff_address=details.dropoff_address.address,
            created_at=order.created_at,
            updated_at=order.updated_at,
            events=[event_log.to_event_out(event, include_actor_id=False) for event in events],
        ).model_dump(mode="json", by_alias=True)

        if self.cache is not None:
            await self.cache.set(order_id, view)
        return view
