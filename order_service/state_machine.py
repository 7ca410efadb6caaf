"""
Order status transitions.

The whole transition matrix lives in ``TRANSITIONS`` as plain data keyed by
actor role and current status, so it can be inspected and tested without any
request handling around it. ``check_transition`` is the only gate an order
status change goes through.
"""
from enum import Enum
from typing import Dict, FrozenSet, Iterable, NamedTuple, Optional, Tuple
import logging

from .errors import AuthorizationError, InvalidTransition, ValidationError

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED_BY_MITRA = "ACCEPTED_BY_MITRA"
    PENDING_DRIVER_ASSIGNMENT = "PENDING_DRIVER_ASSIGNMENT"
    DRIVER_ASSIGNED = "DRIVER_ASSIGNED"
    REJECTED_BY_DRIVER = "REJECTED_BY_DRIVER"
    ACCEPTED_BY_DRIVER = "ACCEPTED_BY_DRIVER"
    DRIVER_AT_PICKUP = "DRIVER_AT_PICKUP"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DRIVER_AT_DROPOFF = "DRIVER_AT_DROPOFF"
    DELIVERED = "DELIVERED"
    CANCELLED_BY_USER = "CANCELLED_BY_USER"
    CANCELLED_BY_MITRA = "CANCELLED_BY_MITRA"
    CANCELLED_BY_DRIVER = "CANCELLED_BY_DRIVER"
    FAILED_DELIVERY = "FAILED_DELIVERY"
    REFUNDED = "REFUNDED"


class ActorType(str, Enum):
    USER = "USER"
    MITRA = "MITRA"
    DRIVER = "DRIVER"
    SYSTEM = "SYSTEM"


class Actor(NamedTuple):
    type: ActorType
    id: str


INITIAL_STATUS = OrderStatus.PENDING

TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED_BY_USER,
    OrderStatus.CANCELLED_BY_MITRA,
    OrderStatus.CANCELLED_BY_DRIVER,
    OrderStatus.FAILED_DELIVERY,
    OrderStatus.REFUNDED,
})

NON_TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset(OrderStatus) - TERMINAL_STATUSES

# States in which a driver holds the order
DRIVER_ACTIVE_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.DRIVER_ASSIGNED,
    OrderStatus.ACCEPTED_BY_DRIVER,
    OrderStatus.DRIVER_AT_PICKUP,
    OrderStatus.PICKED_UP,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DRIVER_AT_DROPOFF,
})

# Cancelled or failed orders whose advance payment can be returned
REFUNDABLE_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.CANCELLED_BY_USER,
    OrderStatus.CANCELLED_BY_MITRA,
    OrderStatus.CANCELLED_BY_DRIVER,
    OrderStatus.FAILED_DELIVERY,
})

PROOF_STATUSES: FrozenSet[OrderStatus] = frozenset({OrderStatus.PICKED_UP, OrderStatus.DELIVERED})

Edges = Iterable[Tuple[Iterable[OrderStatus], OrderStatus]]


def _build(edges: Edges) -> Dict[OrderStatus, FrozenSet[OrderStatus]]:
    table: Dict[OrderStatus, set] = {}
    for sources, target in edges:
        for source in sources:
            table.setdefault(source, set()).add(target)
    return {source: frozenset(targets) for source, targets in table.items()}


TRANSITIONS: Dict[ActorType, Dict[OrderStatus, FrozenSet[OrderStatus]]] = {
    ActorType.USER: _build([
        ((OrderStatus.PENDING, OrderStatus.ACCEPTED_BY_MITRA, OrderStatus.PENDING_DRIVER_ASSIGNMENT),
         OrderStatus.CANCELLED_BY_USER),
    ]),
    ActorType.MITRA: _build([
        ((OrderStatus.PENDING,), OrderStatus.ACCEPTED_BY_MITRA),
        ((OrderStatus.ACCEPTED_BY_MITRA,), OrderStatus.PENDING_DRIVER_ASSIGNMENT),
        ((OrderStatus.PENDING_DRIVER_ASSIGNMENT,), OrderStatus.DRIVER_ASSIGNED),
        (NON_TERMINAL_STATUSES, OrderStatus.CANCELLED_BY_MITRA),
    ]),
    ActorType.DRIVER: _build([
        ((OrderStatus.DRIVER_ASSIGNED,), OrderStatus.ACCEPTED_BY_DRIVER),
        ((OrderStatus.DRIVER_ASSIGNED,), OrderStatus.REJECTED_BY_DRIVER),
        ((OrderStatus.ACCEPTED_BY_DRIVER,), OrderStatus.DRIVER_AT_PICKUP),
        ((OrderStatus.DRIVER_AT_PICKUP,), OrderStatus.PICKED_UP),
        ((OrderStatus.PICKED_UP,), OrderStatus.IN_TRANSIT),
        ((OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT), OrderStatus.DRIVER_AT_DROPOFF),
        ((OrderStatus.DRIVER_AT_DROPOFF,), OrderStatus.DELIVERED),
        ((OrderStatus.DRIVER_AT_DROPOFF,), OrderStatus.FAILED_DELIVERY),
        (DRIVER_ACTIVE_STATUSES, OrderStatus.CANCELLED_BY_DRIVER),
    ]),
    ActorType.SYSTEM: _build([
        ((OrderStatus.REJECTED_BY_DRIVER,), OrderStatus.PENDING_DRIVER_ASSIGNMENT),
        (REFUNDABLE_STATUSES, OrderStatus.REFUNDED),
    ]),
}


def allowed_transitions(actor_type: ActorType, current: OrderStatus) -> FrozenSet[OrderStatus]:
    return TRANSITIONS[ActorType(actor_type)].get(OrderStatus(current), frozenset())


def reachable_by(actor_type: ActorType) -> FrozenSet[OrderStatus]:
    """Every status the role can ever move an order into."""
    targets = set()
    for next_states in TRANSITIONS[ActorType(actor_type)].values():
        targets |= next_states
    return frozenset(targets)


def is_terminal(status: OrderStatus) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def requires_proof(target: OrderStatus, proof_required_by_service: bool) -> bool:
    return proof_required_by_service and OrderStatus(target) in PROOF_STATUSES


def check_transition(
    current: OrderStatus,
    target: OrderStatus,
    actor_type: ActorType,
    *,
    driver_id: Optional[str] = None,
    photo_key: Optional[str] = None,
    proof_required: bool = False,
    talangan_amount: Optional[int] = None,
) -> None:
    """
    Validates a requested status change.

    Checks run in a fixed order: the role must be able to reach the target at
    all (AuthorizationError), the edge must exist in the table for the role
    (InvalidTransition), then the payload must carry what the edge needs
    (ValidationError, or InvalidTransition for a refund with nothing to refund).
    """
    current = OrderStatus(current)
    target = OrderStatus(target)
    actor_type = ActorType(actor_type)

    if target not in reachable_by(actor_type):
        raise AuthorizationError(
            f"{actor_type.value} is not allowed to set status {target.value}",
            details={"actorType": actor_type.value, "requestedStatus": target.value},
        )

    if target not in allowed_transitions(actor_type, current):
        raise InvalidTransition(current.value, target.value, actor_type.value)

    if target == OrderStatus.DRIVER_ASSIGNED and not driver_id:
        raise ValidationError("driverId is required to assign a driver", code="DRIVER_ID_REQUIRED")

    if requires_proof(target, proof_required) and not photo_key:
        raise ValidationError(
            f"A proof photo is required to set status {target.value}",
            code="PROOF_PHOTO_REQUIRED",
            details={"requestedStatus": target.value},
        )

    if target == OrderStatus.REFUNDED and not (talangan_amount and talangan_amount > 0):
        raise InvalidTransition(
            current.value,
            target.value,
            actor_type.value,
            message="Only orders with a recorded advance payment can be refunded",
        )

    logger.debug(f"Transition {current.value} -> {target.value} allowed for {actor_type.value}")


def validate_history(entries: Iterable[Tuple[Optional[OrderStatus], ActorType]]) -> Optional[OrderStatus]:
    """
    Replays (new_status, actor_type) pairs in order against the table.

    The first entry must be the placement into PENDING. Returns the last status
    reached; raises InvalidTransition at the first edge outside the table.
    """
    current: Optional[OrderStatus] = None
    for new_status, actor_type in entries:
        new_status = OrderStatus(new_status)
        if current is None:
            if new_status != INITIAL_STATUS:
                raise InvalidTransition("NONE", new_status.value, ActorType(actor_type).value,
                                        message=f"History must start at {INITIAL_STATUS.value}")
        elif new_status not in allowed_transitions(actor_type, current):
            raise InvalidTransition(current.value, new_status.value, ActorType(actor_type).value)
        current = new_status
    return current
