import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from hirepipe.core.models.auth import CurrentUser
from hirepipe.services.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from hirepipe.services.introductions import (
    get_introduction_for_response,
    is_token_expired,
    request_introduction,
    respond_to_introduction,
)

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


class _Transaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _IntroductionConn:
    def __init__(self, *, has_agreement=True, status=None):
        self.employer_id = uuid4()
        self.candidate = {
            "id": uuid4(),
            "name": "Casey Candidate",
            "email": "cand@example.com",
            "phone": "+1 555 0100",
            "linkedin_url": "https://linkedin.example/casey",
        }
        self.job = {"id": uuid4(), "title": "Staff Engineer", "employer_id": self.employer_id}
        self.has_agreement = has_agreement
        self.introduction = None
        if status is not None:
            self.introduction = self._new_row(status)

    def _new_row(self, status):
        return {
            "id": uuid4(),
            "employer_id": self.employer_id,
            "candidate_id": self.candidate["id"],
            "job_id": None,
            "status": status,
            "intro_requested_at": None,
            "introduced_at": None,
            "candidate_response": None,
            "candidate_responded_at": None,
            "candidate_message": None,
            "response_token": None,
            "response_token_expires_at": None,
            "protection_ends_at": None,
        }

    def transaction(self):
        return _Transaction()

    async def fetchrow(self, query, *args):
        if "FROM employers e" in query:
            return {"id": self.employer_id, "company_name": "Acme", "has_agreement": self.has_agreement}
        if "FROM candidates WHERE" in query:
            return {k: self.candidate[k] for k in ("id", "name", "email")} if args[0] == self.candidate["id"] else None
        if "FROM jobs WHERE" in query:
            return dict(self.job) if args[0] == self.job["id"] else None
        if "INSERT INTO candidate_introductions" in query:
            return self._upsert(*args)
        if "WHERE ci.response_token = $1" in query:
            row = self.introduction
            if row is None or row["response_token"] != args[0]:
                return None
            return {
                **row,
                "candidate_name": self.candidate["name"],
                "candidate_email": self.candidate["email"],
                "candidate_phone": self.candidate["phone"],
                "candidate_linkedin_url": self.candidate["linkedin_url"],
                "company_name": "Acme",
                "employer_email": "boss@example.com",
                "employer_name": "Boss",
                "job_title": self.job["title"] if row["job_id"] == self.job["id"] else None,
            }
        if "UPDATE candidate_introductions" in query:
            row = self.introduction
            if row["id"] != args[0] or row["response_token"] != args[1]:
                return None
            row.update(
                candidate_response=args[2],
                candidate_responded_at=args[3],
                candidate_message=args[4],
                status=args[5],
                introduced_at=args[6] or row["introduced_at"],
                response_token=None,
                response_token_expires_at=None,
            )
            return dict(row)
        raise AssertionError(f"Unexpected fetchrow query: {query}")

    def _upsert(self, employer_id, candidate_id, job_id, now, token, token_expires_at, protection_ends_at):
        row = self.introduction
        if row is None:
            row = self.introduction = self._new_row("intro_requested")
            row["protection_ends_at"] = protection_ends_at
        elif row["status"] not in ("profile_viewed", "intro_requested"):
            return None
        row.update(
            status="intro_requested",
            intro_requested_at=now,
            job_id=job_id or row["job_id"],
            candidate_response="pending",
            candidate_responded_at=None,
            response_token=token,
            response_token_expires_at=token_expires_at,
        )
        if row["protection_ends_at"] is None:
            row["protection_ends_at"] = protection_ends_at
        return dict(row)


def _employer(conn):
    return CurrentUser(id=uuid4(), email="boss@example.com", role="employer", employer_id=conn.employer_id)


def _requested(conn, **kwargs):
    result = asyncio.run(request_introduction(
        conn,
        _employer(conn),
        conn.candidate["id"],
        conn.job["id"],
        "We'd love to chat",
        now=NOW,
        app_base_url="https://app.example",
        **kwargs,
    ))
    return result, conn.introduction["response_token"]


def test_request_requires_service_agreement():
    conn = _IntroductionConn(has_agreement=False)
    with pytest.raises(ForbiddenError, match="Service agreement"):
        asyncio.run(request_introduction(conn, _employer(conn), conn.candidate["id"], now=NOW))
    assert conn.introduction is None


def test_request_is_employer_only():
    conn = _IntroductionConn()
    candidate = CurrentUser(id=uuid4(), email="cand@example.com", role="candidate", candidate_id=conn.candidate["id"])
    with pytest.raises(ForbiddenError, match="Employer access"):
        asyncio.run(request_introduction(conn, candidate, conn.candidate["id"], now=NOW))


def test_request_sends_candidate_a_response_link():
    conn = _IntroductionConn(status="profile_viewed")

    result, token = _requested(conn, token_expiry_days=5, protection_days=180)

    assert result.entity["status"] == "intro_requested"
    assert "response_token" not in result.entity
    assert result.entity["response_token_expires_at"] == NOW + timedelta(days=5)
    assert conn.introduction["protection_ends_at"] == NOW + timedelta(days=180)
    notice = result.notifications[0]
    assert notice.template_key == "introduction.requested"
    assert notice.recipient.email == "cand@example.com"
    assert notice.payload["response_url"] == f"https://app.example/introductions/respond/{token}"
    assert notice.payload["job_title"] == "Staff Engineer"
    assert notice.payload["message"] == "We'd love to chat"


def test_rerequest_reissues_token():
    conn = _IntroductionConn()
    _, first_token = _requested(conn)
    _, second_token = _requested(conn)

    assert first_token != second_token
    with pytest.raises(NotFoundError):
        asyncio.run(get_introduction_for_response(conn, first_token, now=NOW))


def test_request_rejected_once_introduced():
    conn = _IntroductionConn(status="introduced")
    with pytest.raises(ConflictError, match="past the request stage"):
        asyncio.run(request_introduction(conn, _employer(conn), conn.candidate["id"], now=NOW))


def test_request_for_someone_elses_job():
    conn = _IntroductionConn()
    conn.job["employer_id"] = uuid4()
    with pytest.raises(ForbiddenError, match="your own jobs"):
        asyncio.run(request_introduction(conn, _employer(conn), conn.candidate["id"], conn.job["id"], now=NOW))


def test_response_page_hides_contact_details():
    conn = _IntroductionConn()
    _, token = _requested(conn)

    view = asyncio.run(get_introduction_for_response(conn, token, now=NOW + timedelta(days=1)))

    assert view["company_name"] == "Acme"
    assert view["job_title"] == "Staff Engineer"
    assert "candidate_email" not in view
    assert "candidate_phone" not in view


def test_accepting_introduces_and_shares_contact_details():
    conn = _IntroductionConn()
    _, token = _requested(conn)
    answered_at = NOW + timedelta(days=2)

    result = asyncio.run(respond_to_introduction(conn, token, "accepted", now=answered_at))

    assert result.entity["status"] == "introduced"
    assert result.entity["introduced_at"] == answered_at
    assert result.entity["response_token"] is None
    notice = result.notifications[0]
    assert notice.template_key == "introduction.accepted"
    assert notice.recipient.email == "boss@example.com"
    assert notice.payload["candidate_email"] == "cand@example.com"
    assert notice.payload["candidate_phone"] == "+1 555 0100"


def test_declining_tells_employer_first_name_only():
    conn = _IntroductionConn()
    _, token = _requested(conn)

    result = asyncio.run(respond_to_introduction(conn, token, "declined", "  Not looking  ", now=NOW))

    assert result.entity["status"] == "candidate_declined"
    assert result.entity["candidate_message"] == "Not looking"
    notice = result.notifications[0]
    assert notice.template_key == "introduction.declined"
    assert notice.payload["candidate_first_name"] == "Casey"
    assert "candidate_email" not in notice.payload


def test_questions_go_to_admin_and_keep_status():
    conn = _IntroductionConn()
    _, token = _requested(conn)

    with pytest.raises(ValidationError, match="message is required"):
        asyncio.run(respond_to_introduction(conn, token, "questions", "   ", now=NOW))
    assert conn.introduction["response_token"] == token

    result = asyncio.run(respond_to_introduction(
        conn, token, "questions", "Is this remote?", now=NOW, admin_email="ops@example.com",
    ))

    assert result.entity["status"] == "intro_requested"
    assert result.entity["candidate_response"] == "questions"
    notice = result.notifications[0]
    assert notice.recipient.role == "admin"
    assert notice.recipient.email == "ops@example.com"
    assert notice.payload["questions"] == "Is this remote?"


def test_expired_link_is_refused():
    conn = _IntroductionConn()
    _, token = _requested(conn)
    later = NOW + timedelta(days=8)

    with pytest.raises(ExpiredError):
        asyncio.run(respond_to_introduction(conn, token, "accepted", now=later))
    with pytest.raises(ExpiredError):
        asyncio.run(get_introduction_for_response(conn, token, now=later))
    assert conn.introduction["status"] == "intro_requested"


def test_link_works_once():
    conn = _IntroductionConn()
    _, token = _requested(conn)
    asyncio.run(respond_to_introduction(conn, token, "accepted", now=NOW))

    with pytest.raises(NotFoundError):
        asyncio.run(respond_to_introduction(conn, token, "declined", now=NOW))


def test_already_answered_request_is_conflict():
    conn = _IntroductionConn()
    _, token = _requested(conn)
    conn.introduction["candidate_response"] = "accepted"

    with pytest.raises(ConflictError, match="already responded"):
        asyncio.run(respond_to_introduction(conn, token, "declined", now=NOW))


def test_pending_is_not_an_answer():
    conn = _IntroductionConn()
    with pytest.raises(ValidationError):
        asyncio.run(respond_to_introduction(conn, "token", "pending", now=NOW))
    with pytest.raises(ValidationError):
        asyncio.run(respond_to_introduction(conn, "token", "maybe", now=NOW))


def test_token_expiry_boundary():
    assert is_token_expired(None, NOW) is True
    assert is_token_expired(NOW, NOW) is False
    assert is_token_expired(NOW - timedelta(seconds=1), NOW) is True
