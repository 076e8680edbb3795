"""Candidate profile projection by service agreement and introduction state."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping, Optional
from uuid import UUID

import asyncpg

from ..core.models.auth import CurrentUser
from .actors import row_to_dict
from .errors import ForbiddenError, NotFoundError
from .pipeline_state_machine import INTRODUCTION_FULL_ACCESS, IntroductionStatus, coerce_status

logger = logging.getLogger(__name__)


class AccessLevel(str, Enum):
    NO_AGREEMENT = "no_agreement"
    AGREEMENT_SIGNED = "agreement_signed"
    FULL_ACCESS = "full_access"


PUBLIC_FIELDS: tuple[str, ...] = ("id", "experience_level", "years_of_experience", "location")
AGREEMENT_FIELDS: tuple[str, ...] = ("headline", "bio", "skills", "work_experience", "is_available")
CONTACT_FIELDS: tuple[str, ...] = (
    "name",
    "email",
    "phone",
    "linkedin_url",
    "github_url",
    "portfolio_url",
    "resume_url",
)

_INTRODUCTION_STATUS_INFO = {
    IntroductionStatus.PROFILE_VIEWED: "profile_viewed",
    IntroductionStatus.INTRO_REQUESTED: "requested",
    IntroductionStatus.CANDIDATE_DECLINED: "declined",
    IntroductionStatus.INTRODUCED: "introduced",
    IntroductionStatus.INTERVIEWING: "interviewing",
    IntroductionStatus.OFFER_EXTENDED: "offer_extended",
    IntroductionStatus.HIRED: "hired",
    IntroductionStatus.CLOSED_NO_HIRE: "closed_no_hire",
    IntroductionStatus.EXPIRED: "expired",
}


def determine_access_level(
    has_agreement: bool,
    introduction: Optional[Mapping[str, Any]] = None,
) -> AccessLevel:
    if not has_agreement:
        return AccessLevel.NO_AGREEMENT
    if introduction is None:
        return AccessLevel.AGREEMENT_SIGNED
    status = coerce_status(IntroductionStatus, introduction["status"])
    if status in INTRODUCTION_FULL_ACCESS or introduction.get("candidate_response") == "accepted":
        return AccessLevel.FULL_ACCESS
    return AccessLevel.AGREEMENT_SIGNED


def introduction_status_info(introduction: Optional[Mapping[str, Any]]) -> str:
    if introduction is None:
        return "none"
    response = introduction.get("candidate_response")
    if response == "declined":
        return "declined"
    if response == "questions":
        return "pending"
    status = coerce_status(IntroductionStatus, introduction["status"])
    return _INTRODUCTION_STATUS_INFO.get(status, "none")


def gated_name(full_name: Optional[str]) -> str:
    """First name plus last initial, e.g. "Jordan S."."""
    if not full_name or not full_name.strip():
        return "Unknown"
    parts = full_name.split()
    if len(parts) == 1:
        return parts[0]
    return f"{parts[0]} {parts[-1][0]}."


def _summarize_work_experience(entries: Any) -> list[dict[str, Any]]:
    if not isinstance(entries, list):
        return []
    summary = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        summary.append({
            key: entry.get(key)
            for key in ("title", "company", "start_date", "end_date")
            if entry.get(key) is not None
        })
    return summary


def project_candidate_profile(candidate: Mapping[str, Any], access_level: AccessLevel) -> dict[str, Any]:
    """Return only the fields the access level allows. Never mutates ``candidate``."""
    access_level = AccessLevel(access_level)
    profile = {field: candidate.get(field) for field in PUBLIC_FIELDS}
    if access_level == AccessLevel.NO_AGREEMENT:
        return profile

    for field in AGREEMENT_FIELDS:
        profile[field] = candidate.get(field)
    if access_level == AccessLevel.AGREEMENT_SIGNED:
        profile["display_name"] = gated_name(candidate.get("name"))
        profile["work_experience"] = _summarize_work_experience(candidate.get("work_experience"))
        if profile["skills"] is not None:
            profile["skills"] = list(profile["skills"])
        return profile

    for field in CONTACT_FIELDS:
        profile[field] = candidate.get(field)
    profile["display_name"] = candidate.get("name")
    return profile


async def get_employer_access(
    conn: asyncpg.Connection,
    employer_id: UUID,
    candidate_id: UUID,
) -> dict[str, Any]:
    has_agreement = await conn.fetchval(
        "SELECT EXISTS(SELECT 1 FROM service_agreements WHERE employer_id = $1)",
        employer_id,
    )
    introduction = None
    if has_agreement:
        introduction = row_to_dict(await conn.fetchrow(
            """
            SELECT id, status, candidate_response, protection_ends_at
            FROM candidate_introductions
            WHERE employer_id = $1 AND candidate_id = $2
            """,
            employer_id,
            candidate_id,
        ))

    access_level = determine_access_level(bool(has_agreement), introduction)
    return {
        "access_level": access_level.value,
        "introduction_status": introduction_status_info(introduction),
        "has_signed_agreement": bool(has_agreement),
        "introduction_id": str(introduction["id"]) if introduction else None,
        "protection_ends_at": introduction["protection_ends_at"] if introduction else None,
        "can_view_contact_info": access_level == AccessLevel.FULL_ACCESS,
    }


async def get_candidate_view(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    candidate_id: UUID,
) -> dict[str, Any]:
    candidate = row_to_dict(await conn.fetchrow(
        """
        SELECT id, name, email, phone, headline, bio, skills, experience_level,
               years_of_experience, location, work_experience, linkedin_url,
               github_url, portfolio_url, resume_url, is_available
        FROM candidates
        WHERE id = $1
        """,
        candidate_id,
    ))
    if candidate is None:
        raise NotFoundError("Candidate")

    if actor.is_admin or (actor.role == "candidate" and actor.candidate_id == candidate_id):
        return {
            "candidate": project_candidate_profile(candidate, AccessLevel.FULL_ACCESS),
            "access": {"access_level": AccessLevel.FULL_ACCESS.value, "can_view_contact_info": True},
        }
    if actor.role != "employer" or actor.employer_id is None:
        raise ForbiddenError("Employer access required")

    access = await get_employer_access(conn, actor.employer_id, candidate_id)
    if access["access_level"] == AccessLevel.AGREEMENT_SIGNED.value and access["introduction_id"] is None:
        # First view opens the introduction
        await conn.execute(
            """
            INSERT INTO candidate_introductions (employer_id, candidate_id, status)
            VALUES ($1, $2, 'profile_viewed')
            ON CONFLICT (employer_id, candidate_id) DO NOTHING
            """,
            actor.employer_id,
            candidate_id,
        )
        access["introduction_status"] = "profile_viewed"
        logger.info("[Access] Employer %s viewed candidate %s", actor.employer_id, candidate_id)

    return {
        "candidate": project_candidate_profile(candidate, AccessLevel(access["access_level"])),
        "access": access,
    }
