"""Canonical state machines for applications, interviews, offers, introductions
and placement payments."""

from __future__ import annotations

from enum import Enum
from typing import TypeVar

from .errors import InvalidTransitionError, ValidationError


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    SHORTLISTED = "shortlisted"
    INTERVIEW_SCHEDULED = "interview_scheduled"
    INTERVIEWED = "interviewed"
    OFFERED = "offered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class InterviewStatus(str, Enum):
    AWAITING_CANDIDATE = "awaiting_candidate"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"


class IntroductionStatus(str, Enum):
    PROFILE_VIEWED = "profile_viewed"
    INTRO_REQUESTED = "intro_requested"
    INTRODUCED = "introduced"
    INTERVIEWING = "interviewing"
    OFFER_EXTENDED = "offer_extended"
    HIRED = "hired"
    CANDIDATE_DECLINED = "candidate_declined"
    EXPIRED = "expired"
    CLOSED_NO_HIRE = "closed_no_hire"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    UPFRONT_PAID = "upfront_paid"
    FULLY_PAID = "fully_paid"


class ClaimStatus(str, Enum):
    UNCLAIMED = "unclaimed"
    CLAIMED = "claimed"
    CONVERTED = "converted"


_APPLICATION_TRANSITIONS: dict[ApplicationStatus, tuple[ApplicationStatus, ...]] = {
    ApplicationStatus.PENDING: (
        ApplicationStatus.REVIEWED,
        ApplicationStatus.SHORTLISTED,
        ApplicationStatus.INTERVIEW_SCHEDULED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    ),
    ApplicationStatus.REVIEWED: (
        ApplicationStatus.SHORTLISTED,
        ApplicationStatus.INTERVIEW_SCHEDULED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    ),
    ApplicationStatus.SHORTLISTED: (
        ApplicationStatus.INTERVIEW_SCHEDULED,
        ApplicationStatus.INTERVIEWED,
        ApplicationStatus.OFFERED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    ),
    ApplicationStatus.INTERVIEW_SCHEDULED: (
        ApplicationStatus.INTERVIEWED,
        ApplicationStatus.OFFERED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    ),
    ApplicationStatus.INTERVIEWED: (
        # Later interview rounds move the application back to scheduled
        ApplicationStatus.INTERVIEW_SCHEDULED,
        ApplicationStatus.OFFERED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    ),
    ApplicationStatus.OFFERED: (
        ApplicationStatus.ACCEPTED,
        ApplicationStatus.REJECTED,
        # Offer withdrawn by the employer
        ApplicationStatus.INTERVIEWED,
        ApplicationStatus.WITHDRAWN,
    ),
    ApplicationStatus.ACCEPTED: (),
    ApplicationStatus.REJECTED: (),
    ApplicationStatus.WITHDRAWN: (),
}

# Ordering used to decide whether an employer review action moves forward.
_APPLICATION_RANK: dict[ApplicationStatus, int] = {
    ApplicationStatus.PENDING: 0,
    ApplicationStatus.REVIEWED: 1,
    ApplicationStatus.SHORTLISTED: 2,
    ApplicationStatus.INTERVIEW_SCHEDULED: 3,
    ApplicationStatus.INTERVIEWED: 4,
    ApplicationStatus.OFFERED: 5,
    ApplicationStatus.ACCEPTED: 6,
}

# Review may only set these while a pending offer exists.
OFFER_GATED_APPLICATION_STATUSES: frozenset[ApplicationStatus] = frozenset({
    ApplicationStatus.OFFERED,
})

OFFERABLE_APPLICATION_STATUSES: frozenset[ApplicationStatus] = frozenset({
    ApplicationStatus.SHORTLISTED,
    ApplicationStatus.INTERVIEW_SCHEDULED,
    ApplicationStatus.INTERVIEWED,
})

_INTERVIEW_TRANSITIONS: dict[InterviewStatus, tuple[InterviewStatus, ...]] = {
    InterviewStatus.AWAITING_CANDIDATE: (
        InterviewStatus.AWAITING_CONFIRMATION,
        InterviewStatus.CANCELLED,
    ),
    InterviewStatus.AWAITING_CONFIRMATION: (
        InterviewStatus.SCHEDULED,
        InterviewStatus.CANCELLED,
    ),
    InterviewStatus.SCHEDULED: (
        InterviewStatus.CONFIRMED,
        InterviewStatus.COMPLETED,
        InterviewStatus.RESCHEDULED,
        InterviewStatus.CANCELLED,
    ),
    InterviewStatus.CONFIRMED: (
        InterviewStatus.COMPLETED,
        InterviewStatus.RESCHEDULED,
        InterviewStatus.CANCELLED,
    ),
    InterviewStatus.COMPLETED: (),
    InterviewStatus.RESCHEDULED: (),
    InterviewStatus.CANCELLED: (),
}

# Candidate selects once per proposal.
SLOT_SELECTABLE_INTERVIEW_STATUSES: frozenset[InterviewStatus] = frozenset({
    InterviewStatus.AWAITING_CANDIDATE,
})

BOOKED_INTERVIEW_STATUSES: frozenset[InterviewStatus] = frozenset({
    InterviewStatus.SCHEDULED,
    InterviewStatus.CONFIRMED,
})

_OFFER_TRANSITIONS: dict[OfferStatus, tuple[OfferStatus, ...]] = {
    OfferStatus.PENDING: (
        OfferStatus.ACCEPTED,
        OfferStatus.DECLINED,
        OfferStatus.EXPIRED,
        OfferStatus.WITHDRAWN,
    ),
    OfferStatus.ACCEPTED: (),
    OfferStatus.DECLINED: (),
    OfferStatus.EXPIRED: (),
    OfferStatus.WITHDRAWN: (),
}

_INTRODUCTION_PROGRESSION: tuple[IntroductionStatus, ...] = (
    IntroductionStatus.PROFILE_VIEWED,
    IntroductionStatus.INTRO_REQUESTED,
    IntroductionStatus.INTRODUCED,
    IntroductionStatus.INTERVIEWING,
    IntroductionStatus.OFFER_EXTENDED,
    IntroductionStatus.HIRED,
)

INTRODUCTION_EXITS: frozenset[IntroductionStatus] = frozenset({
    IntroductionStatus.CANDIDATE_DECLINED,
    IntroductionStatus.EXPIRED,
    IntroductionStatus.CLOSED_NO_HIRE,
})

INTRODUCTION_FULL_ACCESS: frozenset[IntroductionStatus] = frozenset({
    IntroductionStatus.INTRODUCED,
    IntroductionStatus.INTERVIEWING,
    IntroductionStatus.OFFER_EXTENDED,
    IntroductionStatus.HIRED,
})

_PAYMENT_TRANSITIONS: dict[PaymentStatus, tuple[PaymentStatus, ...]] = {
    PaymentStatus.PENDING: (PaymentStatus.UPFRONT_PAID, PaymentStatus.FULLY_PAID),
    PaymentStatus.UPFRONT_PAID: (PaymentStatus.FULLY_PAID,),
    PaymentStatus.FULLY_PAID: (),
}

_E = TypeVar("_E", bound=Enum)


def coerce_status(enum_cls: type[_E], value: str | _E) -> _E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown {_label(enum_cls)} status '{value}'") from exc


def _label(enum_cls: type[Enum]) -> str:
    return enum_cls.__name__.replace("Status", "").lower()


def _validate(
    table: dict,
    enum_cls: type[_E],
    state_from: str | _E,
    state_to: str | _E,
) -> tuple[_E, _E]:
    source = coerce_status(enum_cls, state_from)
    target = coerce_status(enum_cls, state_to)
    allowed_targets = table[source]
    if target not in allowed_targets:
        allowed_str = ", ".join(t.value for t in allowed_targets) or "none"
        raise InvalidTransitionError(
            f"Invalid {_label(enum_cls)} transition '{source.value}' -> '{target.value}'. "
            f"Allowed targets: {allowed_str}.",
            details={"from": source.value, "to": target.value},
        )
    return source, target


def validate_application_transition(state_from, state_to) -> tuple[ApplicationStatus, ApplicationStatus]:
    return _validate(_APPLICATION_TRANSITIONS, ApplicationStatus, state_from, state_to)


def validate_interview_transition(state_from, state_to) -> tuple[InterviewStatus, InterviewStatus]:
    return _validate(_INTERVIEW_TRANSITIONS, InterviewStatus, state_from, state_to)


def validate_offer_transition(state_from, state_to) -> tuple[OfferStatus, OfferStatus]:
    return _validate(_OFFER_TRANSITIONS, OfferStatus, state_from, state_to)


def validate_payment_transition(state_from, state_to) -> tuple[PaymentStatus, PaymentStatus]:
    return _validate(_PAYMENT_TRANSITIONS, PaymentStatus, state_from, state_to)


def can_transition_application(state_from, state_to) -> bool:
    source = coerce_status(ApplicationStatus, state_from)
    return coerce_status(ApplicationStatus, state_to) in _APPLICATION_TRANSITIONS[source]


def is_application_terminal(status) -> bool:
    return not _APPLICATION_TRANSITIONS[coerce_status(ApplicationStatus, status)]


def is_forward_review(state_from, state_to) -> bool:
    """Rejection is always forward; otherwise the target must rank higher."""
    source = coerce_status(ApplicationStatus, state_from)
    target = coerce_status(ApplicationStatus, state_to)
    if target == ApplicationStatus.REJECTED:
        return True
    if source not in _APPLICATION_RANK or target not in _APPLICATION_RANK:
        return False
    return _APPLICATION_RANK[target] > _APPLICATION_RANK[source]


def can_advance_introduction(state_from, state_to) -> bool:
    source = coerce_status(IntroductionStatus, state_from)
    target = coerce_status(IntroductionStatus, state_to)
    if source in INTRODUCTION_EXITS or source == IntroductionStatus.HIRED:
        return False
    if target in INTRODUCTION_EXITS:
        return True
    return _INTRODUCTION_PROGRESSION.index(target) > _INTRODUCTION_PROGRESSION.index(source)


def introduction_statuses_before(target) -> list[str]:
    """Non-terminal introduction statuses that may advance to ``target``."""
    target = coerce_status(IntroductionStatus, target)
    return [s.value for s in _INTRODUCTION_PROGRESSION[: _INTRODUCTION_PROGRESSION.index(target)]]


def state_machine_map() -> dict[str, dict[str, list[str]]]:
    tables = {
        "application": _APPLICATION_TRANSITIONS,
        "interview": _INTERVIEW_TRANSITIONS,
        "offer": _OFFER_TRANSITIONS,
        "payment": _PAYMENT_TRANSITIONS,
    }
    return {
        name: {source.value: [target.value for target in targets] for source, targets in table.items()}
        for name, table in tables.items()
    }
