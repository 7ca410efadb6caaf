from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import asyncio
import logging
import uvicorn

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status

from . import cache as cache_module
from . import config, database, rate_limiting, schemas
from .errors import AuthorizationError, register_exception_handlers
from .lifecycle import ActionPayload, OrderLifecycleService
from .state_machine import Actor, ActorType, OrderStatus
from .storage import ProofStorage

# Configure logging basic setup
logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')
logger = logging.getLogger(__name__)


def ok(data) -> dict:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json", by_alias=True)
    return {"success": True, "data": data}


# --- Dependencies ---

def get_lifecycle(request: Request) -> OrderLifecycleService:
    return request.app.state.lifecycle


def get_principal_id(request: Request) -> str:
    """Principal verified upstream: gateway attribute first, then the configured header."""
    principal = getattr(request.state, "principal_id", None) or request.headers.get(config.PRINCIPAL_HEADER)
    if not principal:
        raise AuthorizationError("Missing verified principal", code="UNAUTHENTICATED")
    return principal


def user_actor(principal_id: str = Depends(get_principal_id)) -> Actor:
    return Actor(ActorType.USER, principal_id)


def mitra_actor(principal_id: str = Depends(get_principal_id)) -> Actor:
    return Actor(ActorType.MITRA, principal_id)


def driver_actor(driver_id: str, principal_id: str = Depends(get_principal_id)) -> Actor:
    if principal_id != driver_id:
        raise AuthorizationError("Principal does not match the driver in the path")
    return Actor(ActorType.DRIVER, driver_id)


def get_principal_role(request: Request) -> Optional[str]:
    role = getattr(request.state, "principal_role", None)
    if role is None and config.TRUST_PRINCIPAL_ROLE_HEADER:
        role = request.headers.get(config.PRINCIPAL_ROLE_HEADER)
    return role


def system_actor(
    principal_id: str = Depends(get_principal_id),
    role: Optional[str] = Depends(get_principal_role),
) -> Actor:
    if role != ActorType.SYSTEM.value:
        raise AuthorizationError("System role required")
    return Actor(ActorType.SYSTEM, principal_id)


def create_app(
    session_factory=None,
    rate_limit_store: Optional[rate_limiting.RateLimitStore] = None,
    tracking_cache=None,
    proof_storage: Optional[ProofStorage] = None,
    rate_limit_enabled: bool = config.RATE_LIMIT_ENABLED,
) -> FastAPI:
    """
    Builds the order API.

    With a session factory the lifecycle service is wired immediately;
    otherwise the lifespan connects to DATABASE_URL on startup.
    """
    store = rate_limit_store or rate_limiting.RateLimitStore(
        cleanup_interval_ms=config.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS * 1000,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Order Service starting up...")
        engine = None
        if app.state.lifecycle is None:
            engine, factory = database.create_session_factory()
            await database.create_tables(engine)
            app.state.lifecycle = OrderLifecycleService(
                factory,
                cache=tracking_cache if tracking_cache is not None else cache_module.create_tracking_cache(),
                storage=proof_storage or ProofStorage.from_config(),
            )

        logger.info("Starting rate limit sweeper task...")
        sweeper_task = asyncio.create_task(
            rate_limiting.run_cleanup_loop(store, config.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS)
        )

        yield # Application runs here

        logger.info("Order Service shutting down...")
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            logger.info("Rate limit sweeper task cancelled.")
        if engine is not None:
            await engine.dispose() # Clean up engine resources
            await cache_module.close_redis_pool()

    app = FastAPI(
        title="Order Service",
        description="Order lifecycle, tracking and fulfilment for mitra delivery services.",
        version="0.2.0",
        lifespan=lifespan,
    )
    app.state.rate_limit_store = store
    app.state.lifecycle = None
    if session_factory is not None:
        app.state.lifecycle = OrderLifecycleService(session_factory, cache=tracking_cache, storage=proof_storage)

    app.add_middleware(rate_limiting.RateLimitMiddleware, store=store, enabled=rate_limit_enabled)
    register_exception_handlers(app)
    app.include_router(build_router())
    return app


def build_router():
    router = APIRouter()

    @router.get("/health", tags=["Monitoring"], summary="Health Check")
    async def health_check(request: Request):
        return {"status": "healthy", "rateLimit": request.app.state.rate_limit_store.stats()}

    # --- Public / user ---

    @router.post("/api/orders", status_code=status.HTTP_201_CREATED, tags=["Orders"], summary="Place Order")
    async def place_order(body: schemas.PlaceOrderRequest, lifecycle: OrderLifecycleService = Depends(get_lifecycle)):
        """Prices the order from the service's current config and stores it as PENDING."""
        logger.info(f"Received order placement for service {body.service_id}")
        return ok(await lifecycle.place_order(body))

    @router.post("/api/orders/cost-estimate", tags=["Orders"], summary="Estimate Cost")
    async def estimate_cost(body: schemas.CostEstimateRequest, lifecycle: OrderLifecycleService = Depends(get_lifecycle)):
        return ok(await lifecycle.estimate_cost(body))

    @router.get("/api/orders/{order_id}/track", tags=["Orders"], summary="Track Order")
    async def track_order(order_id: str, lifecycle: OrderLifecycleService = Depends(get_lifecycle)):
        """Public tracking view, newest event first. Photos are referenced by key."""
        return ok(await lifecycle.get_tracking(order_id))

    @router.post("/api/orders/{order_id}/cancel", tags=["Orders"], summary="Cancel Order (Customer)")
    async def cancel_by_user(
        order_id: str,
        body: Optional[schemas.TransitionRequest] = None,
        actor: Actor = Depends(user_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        body = body or schemas.TransitionRequest()
        payload = ActionPayload(reason=body.reason, expected_version=body.expected_version)
        return ok(await lifecycle.apply_action(order_id, actor, OrderStatus.CANCELLED_BY_USER, payload))

    # --- Mitra ---

    @router.get("/api/mitra/orders", tags=["Mitra"], summary="List Orders")
    async def mitra_list_orders(
        order_status: Optional[OrderStatus] = Query(None, alias="status"),
        service_id: Optional[str] = Query(None, alias="serviceId"),
        driver_id: Optional[str] = Query(None, alias="driverId"),
        date_from: Optional[datetime] = Query(None, alias="dateFrom"),
        date_to: Optional[datetime] = Query(None, alias="dateTo"),
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        actor: Actor = Depends(mitra_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        """The caller's own orders, newest first."""
        filters = schemas.OrderListFilters(
            status=order_status,
            service_id=service_id,
            driver_id=driver_id,
            date_from=date_from,
            date_to=date_to,
            page=page,
            limit=limit,
        )
        return ok(await lifecycle.list_orders(actor, filters))

    @router.get("/api/mitra/orders/{order_id}", tags=["Mitra"], summary="Get Order")
    async def mitra_get_order(
        order_id: str,
        actor: Actor = Depends(mitra_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        return ok(await lifecycle.get_order(order_id, actor))

    async def _mitra_transition(order_id, actor, lifecycle, target, body: Optional[schemas.TransitionRequest]):
        body = body or schemas.TransitionRequest()
        payload = ActionPayload(reason=body.reason, expected_version=body.expected_version)
        return ok(await lifecycle.apply_action(order_id, actor, target, payload))

    @router.post("/api/mitra/orders/{order_id}/accept", tags=["Mitra"], summary="Accept Order")
    async def mitra_accept(
        order_id: str,
        body: Optional[schemas.TransitionRequest] = None,
        actor: Actor = Depends(mitra_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        return await _mitra_transition(order_id, actor, lifecycle, OrderStatus.ACCEPTED_BY_MITRA, body)

    @router.post("/api/mitra/orders/{order_id}/request-driver", tags=["Mitra"], summary="Open For Driver Assignment")
    async def mitra_request_driver(
        order_id: str,
        body: Optional[schemas.TransitionRequest] = None,
        actor: Actor = Depends(mitra_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        return await _mitra_transition(order_id, actor, lifecycle, OrderStatus.PENDING_DRIVER_ASSIGNMENT, body)

    @router.post("/api/mitra/orders/{order_id}/assign-driver", tags=["Mitra"], summary="Assign Driver")
    async def mitra_assign_driver(
        order_id: str,
        body: schemas.AssignDriverRequest,
        actor: Actor = Depends(mitra_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        payload = ActionPayload(driver_id=body.driver_id, reason=body.reason, expected_version=body.expected_version)
        return ok(await lifecycle.apply_action(order_id, actor, OrderStatus.DRIVER_ASSIGNED, payload))

    @router.post("/api/mitra/orders/{order_id}/cancel", tags=["Mitra"], summary="Cancel Order (Mitra)")
    async def mitra_cancel(
        order_id: str,
        body: Optional[schemas.TransitionRequest] = None,
        actor: Actor = Depends(mitra_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        return await _mitra_transition(order_id, actor, lifecycle, OrderStatus.CANCELLED_BY_MITRA, body)

    @router.post("/api/mitra/orders/{order_id}/add-note", tags=["Mitra"], summary="Add Note")
    async def mitra_add_note(
        order_id: str,
        body: schemas.AddNoteRequest,
        actor: Actor = Depends(mitra_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        return ok(await lifecycle.add_note(order_id, actor, body.note))

    @router.post("/api/mitra/orders/{order_id}/recompute-cost", tags=["Mitra"], summary="Recompute Cost")
    async def mitra_recompute_cost(
        order_id: str,
        body: Optional[schemas.RecomputeCostRequest] = None,
        actor: Actor = Depends(mitra_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        body = body or schemas.RecomputeCostRequest()
        return ok(await lifecycle.recompute_cost(
            order_id, actor, distance_km=body.distance_km, reason=body.reason, expected_version=body.expected_version,
        ))

    # --- Driver ---

    @router.get("/api/driver/{driver_id}/orders/assigned", tags=["Driver"], summary="List Assigned Orders")
    async def driver_assigned_orders(
        actor: Actor = Depends(driver_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        orders = await lifecycle.list_assigned(actor)
        return ok([order.model_dump(mode="json", by_alias=True) for order in orders])

    @router.post("/api/driver/{driver_id}/orders/{order_id}/accept", tags=["Driver"], summary="Accept Assignment")
    async def driver_accept(
        order_id: str,
        body: Optional[schemas.TransitionRequest] = None,
        actor: Actor = Depends(driver_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        body = body or schemas.TransitionRequest()
        payload = ActionPayload(reason=body.reason, expected_version=body.expected_version)
        return ok(await lifecycle.apply_action(order_id, actor, OrderStatus.ACCEPTED_BY_DRIVER, payload))

    @router.post("/api/driver/{driver_id}/orders/{order_id}/reject", tags=["Driver"], summary="Reject Assignment")
    async def driver_reject(
        order_id: str,
        body: Optional[schemas.TransitionRequest] = None,
        actor: Actor = Depends(driver_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        """Rejecting hands the order straight back to the mitra's assignment queue."""
        body = body or schemas.TransitionRequest()
        payload = ActionPayload(reason=body.reason, expected_version=body.expected_version)
        return ok(await lifecycle.apply_action(order_id, actor, OrderStatus.REJECTED_BY_DRIVER, payload))

    @router.post("/api/driver/{driver_id}/orders/{order_id}/update-status", tags=["Driver"], summary="Update Status")
    async def driver_update_status(
        order_id: str,
        body: schemas.UpdateStatusRequest,
        actor: Actor = Depends(driver_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        payload = ActionPayload(
            photo_key=body.photo_key,
            photo_caption=body.photo_caption,
            location=body.location,
            reason=body.reason,
            expected_version=body.expected_version,
        )
        return ok(await lifecycle.apply_action(order_id, actor, body.status, payload))

    @router.post("/api/driver/{driver_id}/orders/{order_id}/add-note", tags=["Driver"], summary="Add Note")
    async def driver_add_note(
        order_id: str,
        body: schemas.AddNoteRequest,
        actor: Actor = Depends(driver_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        return ok(await lifecycle.add_note(order_id, actor, body.note))

    @router.post("/api/driver/{driver_id}/orders/{order_id}/photos", tags=["Driver"], summary="Record Photo")
    async def driver_add_photo(
        order_id: str,
        body: schemas.AddPhotoRequest,
        actor: Actor = Depends(driver_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        return ok(await lifecycle.add_photo(order_id, actor, body.photo_key, body.photo_type, body.caption))

    @router.post(
        "/api/driver/{driver_id}/orders/{order_id}/request-upload-url",
        tags=["Driver"],
        summary="Request Proof Upload URL",
    )
    async def driver_request_upload_url(
        order_id: str,
        body: schemas.UploadUrlRequest,
        actor: Actor = Depends(driver_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        """Returns a pre-signed PUT URL and the key to cite when reporting the photo."""
        return ok(await lifecycle.request_upload_url(order_id, actor, body.filename, body.content_type))

    @router.post("/api/driver/{driver_id}/orders/{order_id}/cancel", tags=["Driver"], summary="Cancel Order (Driver)")
    async def driver_cancel(
        order_id: str,
        body: Optional[schemas.TransitionRequest] = None,
        actor: Actor = Depends(driver_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        body = body or schemas.TransitionRequest()
        payload = ActionPayload(reason=body.reason, expected_version=body.expected_version)
        return ok(await lifecycle.apply_action(order_id, actor, OrderStatus.CANCELLED_BY_DRIVER, payload))

    # --- System ---

    @router.post("/api/system/orders/{order_id}/refund", tags=["System"], summary="Refund Advance Payment")
    async def system_refund(
        order_id: str,
        body: Optional[schemas.TransitionRequest] = None,
        actor: Actor = Depends(system_actor),
        lifecycle: OrderLifecycleService = Depends(get_lifecycle),
    ):
        body = body or schemas.TransitionRequest()
        payload = ActionPayload(reason=body.reason, expected_version=body.expected_version)
        return ok(await lifecycle.apply_action(order_id, actor, OrderStatus.REFUNDED, payload))

    return router


app = create_app()


if __name__ == "__main__":
    uvicorn.run("order_service.main:app", host=config.APP_HOST, port=config.APP_PORT)
