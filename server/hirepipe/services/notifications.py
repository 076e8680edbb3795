"""Notification intents returned by pipeline commands.

Commands never send anything themselves. They return intents alongside the
updated entity, and the caller dispatches them once the transaction has
committed.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


class TemplateKey:
    APPLICATION_RECEIVED = "application.received"
    APPLICATION_STATUS_CHANGED = "application.status_changed"
    APPLICATION_WITHDRAWN = "application.withdrawn"
    INTERVIEW_SLOTS_PROPOSED = "interview.slots_proposed"
    INTERVIEW_SLOTS_SELECTED = "interview.slots_selected"
    INTERVIEW_CONFIRMED = "interview.confirmed"
    INTERVIEW_RESCHEDULE_REQUESTED = "interview.reschedule_requested"
    INTERVIEW_CANCELLED = "interview.cancelled"
    INTERVIEW_REMINDER_24H = "interview.reminder_24h"
    INTERVIEW_REMINDER_1H = "interview.reminder_1h"
    OFFER_EXTENDED = "offer.extended"
    OFFER_ACCEPTED = "offer.accepted"
    OFFER_DECLINED = "offer.declined"
    OFFER_WITHDRAWN = "offer.withdrawn"
    OFFER_EXPIRED = "offer.expired"
    JOB_EXPIRED = "job.expired"
    PLACEMENT_CREATED = "placement.created"
    PAYMENT_RECORDED = "payment.recorded"
    PAYMENT_REMAINING_DUE = "payment.remaining_due"
    PAYMENT_REMAINING_OVERDUE = "payment.remaining_overdue"
    GUARANTEE_ENDING = "guarantee.ending"
    INTRODUCTION_REQUESTED = "introduction.requested"
    INTRODUCTION_ACCEPTED = "introduction.accepted"
    INTRODUCTION_DECLINED = "introduction.declined"
    INTRODUCTION_QUESTIONS = "introduction.questions"
    INTRODUCTION_PROTECTION_ENDING = "introduction.protection_ending"


@dataclass(frozen=True)
class Recipient:
    email: Optional[str]
    name: Optional[str] = None
    user_id: Optional[str] = None
    role: Optional[str] = None


@dataclass(frozen=True)
class NotificationIntent:
    recipient: Recipient
    template_key: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CommandResult:
    """Updated entity plus the notifications to send after commit."""

    entity: dict[str, Any]
    notifications: list[NotificationIntent] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_response(self, entity_name: str) -> dict[str, Any]:
        body = {entity_name: self.entity, **self.extra}
        body["notifications"] = [intent.to_dict() for intent in self.notifications]
        return body


class NotificationSender(Protocol):
    async def send_notification(self, intent: NotificationIntent) -> bool:
        ...


def intent(
    email: Optional[str],
    name: Optional[str],
    template_key: str,
    *,
    role: Optional[str] = None,
    user_id: Any = None,
    **payload: Any,
) -> NotificationIntent:
    return NotificationIntent(
        recipient=Recipient(
            email=email,
            name=name,
            user_id=str(user_id) if user_id is not None else None,
            role=role,
        ),
        template_key=template_key,
        payload={key: _jsonable(value) for key, value in payload.items()},
    )


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


async def dispatch_notifications(
    sender: NotificationSender,
    intents: list[NotificationIntent],
) -> list[dict[str, Any]]:
    """Deliver intents one by one. Failures are logged and returned, never raised."""
    failures: list[dict[str, Any]] = []
    for item in intents:
        if not item.recipient.email:
            logger.info("[Notifications] Skipping %s, recipient has no email", item.template_key)
            continue
        try:
            delivered = await sender.send_notification(item)
        except Exception as exc:
            logger.warning(
                "[Notifications] Failed to send %s to %s: %s",
                item.template_key,
                item.recipient.email,
                exc,
            )
            failures.append({"template_key": item.template_key, "error": str(exc)})
            continue
        if not delivered:
            failures.append({"template_key": item.template_key, "error": "not delivered"})
    return failures
