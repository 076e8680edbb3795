import pytest

from hirepipe.services.errors import ConflictError, InvalidTransitionError, ValidationError
from hirepipe.services.pipeline_state_machine import (
    ApplicationStatus,
    can_advance_introduction,
    can_transition_application,
    introduction_statuses_before,
    is_application_terminal,
    is_forward_review,
    state_machine_map,
    validate_interview_transition,
    validate_offer_transition,
    validate_payment_transition,
)


def test_application_happy_path():
    assert can_transition_application("pending", "reviewed") is True
    assert can_transition_application("shortlisted", "interview_scheduled") is True
    assert can_transition_application("offered", "accepted") is True


def test_terminal_application_statuses():
    for status in ("accepted", "rejected", "withdrawn"):
        assert is_application_terminal(status) is True
    assert is_application_terminal(ApplicationStatus.OFFERED) is False


def test_forward_review_only():
    assert is_forward_review("reviewed", "shortlisted") is True
    assert is_forward_review("shortlisted", "reviewed") is False
    assert is_forward_review("interviewed", "rejected") is True


def test_invalid_offer_transition_is_conflict():
    with pytest.raises(InvalidTransitionError, match="Invalid offer transition 'accepted' -> 'declined'") as exc_info:
        validate_offer_transition("accepted", "declined")
    assert isinstance(exc_info.value, ConflictError)
    assert exc_info.value.details == {"from": "accepted", "to": "declined"}


def test_interview_protocol_order():
    validate_interview_transition("awaiting_candidate", "awaiting_confirmation")
    with pytest.raises(InvalidTransitionError, match="Allowed targets: awaiting_confirmation, cancelled"):
        validate_interview_transition("awaiting_candidate", "scheduled")
    with pytest.raises(InvalidTransitionError, match="Allowed targets: none"):
        validate_interview_transition("rescheduled", "scheduled")


def test_payment_cannot_go_backwards():
    validate_payment_transition("pending", "upfront_paid")
    validate_payment_transition("upfront_paid", "fully_paid")
    with pytest.raises(InvalidTransitionError):
        validate_payment_transition("fully_paid", "upfront_paid")


def test_unknown_status_is_validation_error():
    with pytest.raises(ValidationError, match="Unknown application status 'archived'"):
        can_transition_application("archived", "pending")


def test_uppercase_statuses_are_accepted():
    assert can_transition_application("PENDING", "REVIEWED") is True


def test_introduction_progression():
    assert can_advance_introduction("profile_viewed", "interviewing") is True
    assert can_advance_introduction("hired", "interviewing") is False
    assert can_advance_introduction("offer_extended", "closed_no_hire") is True
    assert introduction_statuses_before("interviewing") == [
        "profile_viewed",
        "intro_requested",
        "introduced",
    ]


def test_state_machine_map_lists_every_entity():
    mapping = state_machine_map()
    assert set(mapping) == {"application", "interview", "offer", "payment"}
    assert mapping["offer"]["pending"] == ["accepted", "declined", "expired", "withdrawn"]
