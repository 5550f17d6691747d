"""
Trip state graph.

Declarative table of legal trip status transitions. Every status write must
call ``validate_transition`` first and then re-check the pre-image at write
time through ``TripStore.update_if_status``.
"""

from typing import Dict, FrozenSet, Union

from backend.app.core.exceptions import InvalidTransitionError
from backend.app.models.trip_enums import TripStatus

S = TripStatus

TRANSITIONS: Dict[TripStatus, FrozenSet[TripStatus]] = {
    S.DRAFT: frozenset({S.SELECTING_GUIDE, S.CANCELLED}),
    S.SELECTING_GUIDE: frozenset({S.AWAITING_CALL, S.CANCELLED}),
    # selecting_guide again when the tourist changes guide
    S.AWAITING_CALL: frozenset({S.IN_CALL, S.SELECTING_GUIDE, S.CANCELLED}),
    # awaiting_call is a retry, awaiting_payment the direct-accept shortcut
    S.IN_CALL: frozenset({S.PENDING_CONFIRMATION, S.AWAITING_CALL, S.AWAITING_PAYMENT, S.CANCELLED}),
    S.PENDING_CONFIRMATION: frozenset({S.AWAITING_PAYMENT, S.REJECTED, S.AWAITING_CALL, S.CANCELLED}),
    S.AWAITING_PAYMENT: frozenset({S.CONFIRMED, S.PENDING_CONFIRMATION, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.IN_PROGRESS, S.COMPLETED, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.COMPLETED, S.CANCELLED}),
    S.REJECTED: frozenset({S.SELECTING_GUIDE, S.ARCHIVED}),
    S.CANCELLED: frozenset({S.ARCHIVED}),
    S.COMPLETED: frozenset({S.ARCHIVED}),
    S.ARCHIVED: frozenset(),
}

INITIAL_STATUS = S.DRAFT


def _coerce(status: Union[TripStatus, str]) -> TripStatus:
    return status if isinstance(status, TripStatus) else TripStatus(status)


def allowed_targets(status: Union[TripStatus, str]) -> FrozenSet[TripStatus]:
    """Statuses reachable from ``status`` in one step."""
    return TRANSITIONS[_coerce(status)]


def can_transition(from_status: Union[TripStatus, str], to_status: Union[TripStatus, str]) -> bool:
    """Return True if ``from_status -> to_status`` is an edge of the graph."""
    try:
        return _coerce(to_status) in allowed_targets(from_status)
    except ValueError:
        # Unknown status values are never legal endpoints
        return False


def validate_transition(from_status: Union[TripStatus, str], to_status: Union[TripStatus, str]) -> None:
    """
    Raise ``InvalidTransitionError`` unless the move is legal.

    Raises:
        InvalidTransitionError: carrying ``from_status`` and ``to_status``
    """
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)


def is_terminal(status: Union[TripStatus, str]) -> bool:
    return not allowed_targets(status)


def reachable_from(start: Union[TripStatus, str] = INITIAL_STATUS) -> FrozenSet[TripStatus]:
    """All statuses reachable from ``start`` (including itself)."""
    seen = {_coerce(start)}
    frontier = [_coerce(start)]
    while frontier:
        current = frontier.pop()
        for target in TRANSITIONS[current]:
            if target not in seen:
                seen.add(target)
                frontier.append(target)
    return frozenset(seen)
