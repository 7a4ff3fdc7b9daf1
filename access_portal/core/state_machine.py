"""Status state machines for access requests, request items and grants."""
from typing import ClassVar

from access_portal.services.errors import BadRequestError


class InvalidStatusTransition(BadRequestError):
    """Raised when an invalid status transition is attempted."""

    def __init__(self, from_status: str, to_status: str, valid: list[str]):
        self.from_status = from_status
        self.to_status = to_status
        allowed = ", ".join(valid) if valid else "none"
        super().__init__(
            f"Invalid status transition from '{from_status}' to '{to_status}'. "
            f"Valid transitions from '{from_status}': {allowed}"
        )


class StatusStateMachine:
    """Base class for a hardcoded status transition table."""

    STATES: ClassVar[list[str]] = []
    TRANSITIONS: ClassVar[dict[str, list[str]]] = {}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a status transition is valid.

        Args:
            from_status: Current status
            to_status: Target status

        Returns:
            True if transition is valid, False otherwise
        """
        return to_status in cls.TRANSITIONS.get(from_status, [])

    @classmethod
    def transition(cls, from_status: str, to_status: str) -> str:
        """Perform a status transition.

        Args:
            from_status: Current status
            to_status: Target status

        Returns:
            The new status

        Raises:
            InvalidStatusTransition: If the transition is not valid
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStatusTransition(
                from_status, to_status, cls.get_valid_transitions(from_status)
            )
        return to_status

    @classmethod
    def get_valid_transitions(cls, from_status: str) -> list[str]:
        """Get list of valid transitions from a status."""
        return list(cls.TRANSITIONS.get(from_status, []))

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.TRANSITIONS.get(status)


class RequestStateMachine(StatusStateMachine):
    """Manager decision on a whole access request.

    States:
        requested: Waiting for the target user's manager
        approved: Manager approved (items continue with system owners)
        rejected: Manager or a system owner rejected
    """

    STATES: ClassVar[list[str]] = ["requested", "approved", "rejected"]

    TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        "requested": ["approved", "rejected"],
        "approved": [],
        "rejected": [],
    }


class ItemStateMachine(StatusStateMachine):
    """Per-item decision, tracked independently of the parent request.

    Owner decisions follow ``TRANSITIONS``. A manager rejecting the whole
    request may also overturn an owner approval, as long as the item has not
    been provisioned yet (``MANAGER_TRANSITIONS``).
    """

    STATES: ClassVar[list[str]] = ["requested", "approved", "rejected"]

    TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        "requested": ["approved", "rejected"],
        "approved": [],
        "rejected": [],
    }

    MANAGER_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        "requested": ["approved", "rejected"],
        "approved": ["rejected"],
        "rejected": [],
    }

    @classmethod
    def manager_transition(
        cls, from_status: str, to_status: str, provisioned: bool = False
    ) -> str:
        """Apply a manager's request-level decision to one item.

        Raises:
            InvalidStatusTransition: If the move is not allowed, or the item
                already has a grant
        """
        valid = [] if provisioned else cls.MANAGER_TRANSITIONS.get(from_status, [])
        if to_status not in valid:
            raise InvalidStatusTransition(from_status, to_status, list(valid))
        return to_status


class GrantStateMachine(StatusStateMachine):
    """Grant ledger lifecycle.

    States:
        active: User currently holds the access
        to_remove: Flagged for removal, waiting for the system owner
        removed: Access revoked (terminal)

    ``active -> removed`` is allowed directly as an owner shortcut.
    """

    STATES: ClassVar[list[str]] = ["active", "to_remove", "removed"]

    TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        "active": ["to_remove", "removed"],
        "to_remove": ["active", "removed"],
        "removed": [],
    }


def aggregate_request_status(item_statuses: list[str]) -> str:
    """Derive a request's status from its items.

    Rejected if any item is rejected, approved if every item is approved,
    requested otherwise.
    """
    if any(status == "rejected" for status in item_statuses):
        return "rejected"
    if item_statuses and all(status == "approved" for status in item_statuses):
        return "approved"
    return "requested"
