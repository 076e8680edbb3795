"""Email delivery of notification intents via MailerSend."""
import html
from typing import Optional

import httpx

from ...config import get_settings
from ...services.notifications import NotificationIntent, TemplateKey

# Subject lines per template key. Bodies are rendered by the mailer templates;
# the payload is attached as template variables.
SUBJECTS: dict[str, str] = {
    TemplateKey.APPLICATION_RECEIVED: "New application: {job_title}",
    TemplateKey.APPLICATION_STATUS_CHANGED: "Your application for {job_title} was updated",
    TemplateKey.APPLICATION_WITHDRAWN: "Application withdrawn: {job_title}",
    TemplateKey.INTERVIEW_SLOTS_PROPOSED: "Interview availability: {job_title}",
    TemplateKey.INTERVIEW_SLOTS_SELECTED: "Candidate selected interview times",
    TemplateKey.INTERVIEW_CONFIRMED: "Interview confirmed: {job_title}",
    TemplateKey.INTERVIEW_RESCHEDULE_REQUESTED: "Reschedule requested: {job_title}",
    TemplateKey.INTERVIEW_CANCELLED: "Interview cancelled: {job_title}",
    TemplateKey.INTERVIEW_REMINDER_24H: "Reminder: interview tomorrow",
    TemplateKey.INTERVIEW_REMINDER_1H: "Starting soon: interview in about an hour",
    TemplateKey.OFFER_EXTENDED: "You received an offer: {position}",
    TemplateKey.OFFER_ACCEPTED: "Offer accepted: {position}",
    TemplateKey.OFFER_DECLINED: "Offer declined: {position}",
    TemplateKey.OFFER_WITHDRAWN: "Offer withdrawn: {position}",
    TemplateKey.OFFER_EXPIRED: "Offer expired: {position}",
    TemplateKey.JOB_EXPIRED: "Job posting expired: {job_title}",
    TemplateKey.PLACEMENT_CREATED: "Placement created: {job_title}",
    TemplateKey.PAYMENT_RECORDED: "Payment recorded for {job_title}",
    TemplateKey.PAYMENT_REMAINING_DUE: "Remaining payment due: {job_title}",
    TemplateKey.PAYMENT_REMAINING_OVERDUE: "OVERDUE: remaining payment for {job_title}",
    TemplateKey.GUARANTEE_ENDING: "Guarantee period ending in {days_remaining} days",
    TemplateKey.INTRODUCTION_REQUESTED: "{company_name} would like an introduction",
    TemplateKey.INTRODUCTION_ACCEPTED: "{candidate_name} accepted your introduction request",
    TemplateKey.INTRODUCTION_DECLINED: "Introduction request declined",
    TemplateKey.INTRODUCTION_QUESTIONS: "Candidate questions about {company_name}",
    TemplateKey.INTRODUCTION_PROTECTION_ENDING: "Introduction protection ends in {days_remaining} days",
}


class _SafeFormat(dict):
    def __missing__(self, key):
        return ""


def render_subject(intent: NotificationIntent) -> str:
    template = SUBJECTS.get(intent.template_key, intent.template_key)
    return template.format_map(_SafeFormat(intent.payload)).strip()


def render_text(intent: NotificationIntent) -> str:
    lines = [f"Hi {intent.recipient.name or 'there'},", ""]
    for key, value in intent.payload.items():
        if value is None or isinstance(value, (dict, list)):
            continue
        lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")
    return "\n".join(lines)


class EmailService:
    """Service for sending notification emails via MailerSend API."""

    def __init__(self):
        self.settings = get_settings()
        self.api_key = self.settings.mailersend_api_key
        self.from_email = self.settings.mailersend_from_email
        self.from_name = self.settings.mailersend_from_name
        self.base_url = "https://api.mailersend.com/v1"

    def is_configured(self) -> bool:
        """Check if email service is properly configured."""
        return bool(self.api_key)

    async def send_email(
        self,
        to_email: str,
        to_name: Optional[str],
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> bool:
        """Send a single email. Returns False when not delivered; raises on transport errors."""
        if not self.is_configured():
            print("[Email] MailerSend not configured, skipping email send")
            return False

        payload = {
            "from": {
                "email": self.from_email,
                "name": self.from_name,
            },
            "to": [
                {
                    "email": to_email,
                    "name": to_name or to_email,
                }
            ],
            "subject": subject,
            "html": html_content,
        }
        if text_content:
            payload["text"] = text_content
        if tags:
            payload["tags"] = tags

        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{self.base_url}/email",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=30.0,
            )

        if response.status_code in (200, 201, 202):
            print(f"[Email] Sent email to {to_email}")
            return True
        print(f"[Email] Failed to send to {to_email}: {response.status_code} - {response.text}")
        return False

    async def send_notification(self, intent: NotificationIntent) -> bool:
        if not intent.recipient.email:
            return False
        text = render_text(intent)
        html_content = "<br>".join(html.escape(line) for line in text.splitlines())
        return await self.send_email(
            to_email=intent.recipient.email,
            to_name=intent.recipient.name,
            subject=render_subject(intent),
            html_content=html_content,
            text_content=text,
            tags=[intent.template_key],
        )
