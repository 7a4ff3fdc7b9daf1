"""Tests for request, item and grant status state machines."""
import pytest

from access_portal.core.state_machine import (
    GrantStateMachine,
    InvalidStatusTransition,
    ItemStateMachine,
    RequestStateMachine,
    aggregate_request_status,
)
from access_portal.services.errors import BadRequestError


class TestRequestStateMachine:
    """Test request transitions."""

    def test_requested_to_approved_allowed(self):
        assert RequestStateMachine.can_transition("requested", "approved") is True

    def test_requested_to_rejected_allowed(self):
        assert RequestStateMachine.can_transition("requested", "rejected") is True

    def test_approved_is_terminal(self):
        assert RequestStateMachine.is_terminal("approved") is True
        assert RequestStateMachine.can_transition("approved", "rejected") is False

    def test_rejected_is_terminal(self):
        assert RequestStateMachine.is_terminal("rejected") is True
        assert RequestStateMachine.can_transition("rejected", "approved") is False

    def test_repeat_transition_not_allowed(self):
        """Approving twice is an invalid transition, not a no-op."""
        with pytest.raises(InvalidStatusTransition):
            RequestStateMachine.transition("approved", "approved")


class TestItemStateMachine:
    """Test item transitions."""

    def test_item_table_matches_request_table(self):
        assert ItemStateMachine.TRANSITIONS == RequestStateMachine.TRANSITIONS

    def test_transition_returns_new_status(self):
        assert ItemStateMachine.transition("requested", "approved") == "approved"

    def test_owner_cannot_reject_approved_item(self):
        assert ItemStateMachine.can_transition("approved", "rejected") is False

    def test_manager_rejection_overturns_owner_approval(self):
        assert ItemStateMachine.manager_transition("approved", "rejected") == "rejected"

    def test_manager_rejection_blocked_once_provisioned(self):
        with pytest.raises(InvalidStatusTransition):
            ItemStateMachine.manager_transition("approved", "rejected", provisioned=True)

    def test_manager_cannot_reopen_rejected_item(self):
        with pytest.raises(InvalidStatusTransition):
            ItemStateMachine.manager_transition("rejected", "approved")


class TestGrantStateMachine:
    """Test grant ledger transitions."""

    def test_active_to_to_remove_allowed(self):
        assert GrantStateMachine.can_transition("active", "to_remove") is True

    def test_to_remove_back_to_active_allowed(self):
        """Removal can be cancelled."""
        assert GrantStateMachine.can_transition("to_remove", "active") is True

    def test_active_to_removed_shortcut_allowed(self):
        assert GrantStateMachine.can_transition("active", "removed") is True

    def test_removed_is_terminal(self):
        for status in GrantStateMachine.STATES:
            assert GrantStateMachine.can_transition("removed", status) is False
        assert GrantStateMachine.is_terminal("removed") is True

    def test_self_transition_not_allowed(self):
        assert GrantStateMachine.can_transition("active", "active") is False

    def test_transition_raises_with_valid_options(self):
        """Error message names both statuses and the valid targets."""
        with pytest.raises(InvalidStatusTransition) as exc_info:
            GrantStateMachine.transition("removed", "active")
        message = str(exc_info.value)
        assert "'removed'" in message
        assert "'active'" in message
        assert message.endswith("none")

    def test_get_valid_transitions(self):
        assert GrantStateMachine.get_valid_transitions("to_remove") == [
            "active",
            "removed",
        ]

    def test_unknown_status_has_no_transitions(self):
        assert GrantStateMachine.get_valid_transitions("bogus") == []

    def test_invalid_transition_is_bad_request(self):
        exc = InvalidStatusTransition("active", "active", ["to_remove"])
        assert isinstance(exc, BadRequestError)
        assert exc.status_code == 400


class TestAggregateRequestStatus:
    """Test request status derivation from item statuses."""

    def test_all_requested(self):
        assert aggregate_request_status(["requested", "requested"]) == "requested"

    def test_partially_approved_stays_requested(self):
        assert aggregate_request_status(["approved", "requested"]) == "requested"

    def test_all_approved(self):
        assert aggregate_request_status(["approved", "approved"]) == "approved"

    def test_any_rejected_wins(self):
        assert aggregate_request_status(["approved", "rejected"]) == "rejected"
        assert aggregate_request_status(["requested", "rejected"]) == "rejected"

    def test_no_items(self):
        assert aggregate_request_status([]) == "requested"
