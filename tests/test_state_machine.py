"""Transition table and its checks, independent of storage."""

import pytest

from order_service import state_machine as sm
from order_service.errors import AuthorizationError, InvalidTransition, ValidationError
from order_service.state_machine import ActorType, OrderStatus


class TestTable:
    def test_terminal_states_only_lead_to_refund(self):
        for actor_type in ActorType:
            for status in sm.TERMINAL_STATUSES:
                allowed = sm.allowed_transitions(actor_type, status)
                assert allowed <= {OrderStatus.REFUNDED}

    def test_refunded_is_final_for_everyone(self):
        assert all(not sm.allowed_transitions(actor, OrderStatus.REFUNDED) for actor in ActorType)

    def test_user_may_cancel_only_before_a_driver_holds_the_order(self):
        cancellable = {
            status for status in OrderStatus
            if OrderStatus.CANCELLED_BY_USER in sm.allowed_transitions(ActorType.USER, status)
        }
        assert cancellable == {
            OrderStatus.PENDING,
            OrderStatus.ACCEPTED_BY_MITRA,
            OrderStatus.PENDING_DRIVER_ASSIGNMENT,
        }

    def test_mitra_may_cancel_any_live_order(self):
        for status in sm.NON_TERMINAL_STATUSES:
            assert OrderStatus.CANCELLED_BY_MITRA in sm.allowed_transitions(ActorType.MITRA, status)

    def test_in_transit_is_reachable(self):
        assert OrderStatus.IN_TRANSIT in sm.allowed_transitions(ActorType.DRIVER, OrderStatus.PICKED_UP)
        assert OrderStatus.DRIVER_AT_DROPOFF in sm.allowed_transitions(ActorType.DRIVER, OrderStatus.IN_TRANSIT)

    def test_every_state_is_reachable_from_pending(self):
        seen = {sm.INITIAL_STATUS}
        frontier = [sm.INITIAL_STATUS]
        while frontier:
            current = frontier.pop()
            for actor_type in ActorType:
                for target in sm.allowed_transitions(actor_type, current) - seen:
                    seen.add(target)
                    frontier.append(target)
        assert seen == set(OrderStatus)


class TestCheckTransition:
    def test_allowed(self):
        sm.check_transition(OrderStatus.PENDING, OrderStatus.ACCEPTED_BY_MITRA, ActorType.MITRA)

    def test_assignment_needs_driver_id(self):
        with pytest.raises(ValidationError) as exc_info:
            sm.check_transition(OrderStatus.PENDING_DRIVER_ASSIGNMENT, OrderStatus.DRIVER_ASSIGNED, ActorType.MITRA)
        assert exc_info.value.code == "DRIVER_ID_REQUIRED"

    def test_assignment_by_user_is_not_authorized(self):
        with pytest.raises(AuthorizationError):
            sm.check_transition(
                OrderStatus.PENDING_DRIVER_ASSIGNMENT, OrderStatus.DRIVER_ASSIGNED, ActorType.USER, driver_id="drv-1",
            )

    def test_role_check_comes_before_edge_check(self):
        # USER can never deliver, so the missing edge is not what gets reported
        with pytest.raises(AuthorizationError):
            sm.check_transition(OrderStatus.PENDING, OrderStatus.DELIVERED, ActorType.USER)

    def test_missing_edge_reports_both_states_and_role(self):
        with pytest.raises(InvalidTransition) as exc_info:
            sm.check_transition(OrderStatus.PENDING, OrderStatus.PICKED_UP, ActorType.DRIVER)

        error = exc_info.value
        assert error.code == "INVALID_STATUS_TRANSITION"
        assert error.details == {"currentStatus": "PENDING", "requestedStatus": "PICKED_UP", "actorType": "DRIVER"}

    def test_user_cannot_cancel_after_driver_accepted(self):
        with pytest.raises(InvalidTransition):
            sm.check_transition(OrderStatus.ACCEPTED_BY_DRIVER, OrderStatus.CANCELLED_BY_USER, ActorType.USER)

    @pytest.mark.parametrize("target,source", [
        (OrderStatus.PICKED_UP, OrderStatus.DRIVER_AT_PICKUP),
        (OrderStatus.DELIVERED, OrderStatus.DRIVER_AT_DROPOFF),
    ])
    def test_proof_required_by_service(self, target, source):
        with pytest.raises(ValidationError) as exc_info:
            sm.check_transition(source, target, ActorType.DRIVER, proof_required=True)
        assert exc_info.value.code == "PROOF_PHOTO_REQUIRED"

        sm.check_transition(source, target, ActorType.DRIVER, proof_required=True, photo_key="proofs/m/o/p.jpg")
        sm.check_transition(source, target, ActorType.DRIVER, proof_required=False)

    def test_failed_delivery_needs_no_proof(self):
        sm.check_transition(
            OrderStatus.DRIVER_AT_DROPOFF, OrderStatus.FAILED_DELIVERY, ActorType.DRIVER, proof_required=True,
        )

    def test_refund_requires_advance_payment(self):
        with pytest.raises(InvalidTransition):
            sm.check_transition(OrderStatus.CANCELLED_BY_USER, OrderStatus.REFUNDED, ActorType.SYSTEM)
        sm.check_transition(OrderStatus.CANCELLED_BY_USER, OrderStatus.REFUNDED, ActorType.SYSTEM, talangan_amount=50000)

    def test_delivered_orders_are_not_refunded(self):
        with pytest.raises(InvalidTransition):
            sm.check_transition(OrderStatus.DELIVERED, OrderStatus.REFUNDED, ActorType.SYSTEM, talangan_amount=50000)

    def test_only_system_refunds(self):
        with pytest.raises(AuthorizationError):
            sm.check_transition(OrderStatus.CANCELLED_BY_MITRA, OrderStatus.REFUNDED, ActorType.MITRA, talangan_amount=1)


class TestValidateHistory:
    def test_delivery_path(self):
        history = [
            (OrderStatus.PENDING, ActorType.USER),
            (OrderStatus.ACCEPTED_BY_MITRA, ActorType.MITRA),
            (OrderStatus.PENDING_DRIVER_ASSIGNMENT, ActorType.MITRA),
            (OrderStatus.DRIVER_ASSIGNED, ActorType.MITRA),
            (OrderStatus.REJECTED_BY_DRIVER, ActorType.DRIVER),
            (OrderStatus.PENDING_DRIVER_ASSIGNMENT, ActorType.SYSTEM),
            (OrderStatus.DRIVER_ASSIGNED, ActorType.MITRA),
            (OrderStatus.ACCEPTED_BY_DRIVER, ActorType.DRIVER),
            (OrderStatus.DRIVER_AT_PICKUP, ActorType.DRIVER),
            (OrderStatus.PICKED_UP, ActorType.DRIVER),
            (OrderStatus.IN_TRANSIT, ActorType.DRIVER),
            (OrderStatus.DRIVER_AT_DROPOFF, ActorType.DRIVER),
            (OrderStatus.DELIVERED, ActorType.DRIVER),
        ]
        assert sm.validate_history(history) == OrderStatus.DELIVERED

    def test_edge_outside_table(self):
        history = [
            (OrderStatus.PENDING, ActorType.USER),
            (OrderStatus.DRIVER_ASSIGNED, ActorType.MITRA),
        ]
        with pytest.raises(InvalidTransition):
            sm.validate_history(history)

    def test_must_start_at_pending(self):
        with pytest.raises(InvalidTransition):
            sm.validate_history([(OrderStatus.ACCEPTED_BY_MITRA, ActorType.MITRA)])

    def test_empty_history(self):
        assert sm.validate_history([]) is None
