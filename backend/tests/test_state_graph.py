"""
Trip state graph tests.

The graph is pure data; these tests pin the edges the trip flow relies on.
"""

import pytest

from backend.app.core.exceptions import InvalidTransitionError
from backend.app.domain.trips.state_graph import (
    TRANSITIONS,
    allowed_targets,
    can_transition,
    is_terminal,
    reachable_from,
    validate_transition,
)
from backend.app.models.trip_enums import TripStatus


def test_every_status_has_an_entry():
    assert set(TRANSITIONS) == set(TripStatus)


def test_negotiation_path_is_legal():
    path = [
        TripStatus.SELECTING_GUIDE,
        TripStatus.AWAITING_CALL,
        TripStatus.IN_CALL,
        TripStatus.PENDING_CONFIRMATION,
        TripStatus.AWAITING_PAYMENT,
        TripStatus.CONFIRMED,
        TripStatus.IN_PROGRESS,
        TripStatus.COMPLETED,
        TripStatus.ARCHIVED,
    ]
    for current, following in zip(path, path[1:]):
        validate_transition(current, following)


def test_accept_from_call_skips_pending_confirmation():
    assert can_transition(TripStatus.IN_CALL, TripStatus.AWAITING_PAYMENT)


def test_rejected_only_reopens_or_archives():
    assert allowed_targets(TripStatus.REJECTED) == {TripStatus.SELECTING_GUIDE, TripStatus.ARCHIVED}


def test_completed_trip_cannot_be_cancelled():
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_transition(TripStatus.COMPLETED, TripStatus.CANCELLED)

    assert exc_info.value.from_status == "completed"
    assert exc_info.value.to_status == "cancelled"
    assert exc_info.value.status_code == 409


def test_cannot_skip_payment():
    assert not can_transition(TripStatus.PENDING_CONFIRMATION, TripStatus.CONFIRMED)
    assert not can_transition(TripStatus.AWAITING_CALL, TripStatus.AWAITING_PAYMENT)


def test_string_statuses_are_accepted():
    assert can_transition("awaiting_payment", "confirmed")
    assert not can_transition("awaiting_payment", "no_such_status")


def test_archived_is_the_only_terminal_status():
    terminal = [status for status in TripStatus if is_terminal(status)]
    assert terminal == [TripStatus.ARCHIVED]


def test_every_status_reachable_from_draft():
    assert reachable_from(TripStatus.DRAFT) == frozenset(TripStatus)
