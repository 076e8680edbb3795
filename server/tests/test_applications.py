import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from hirepipe.core.models.auth import CurrentUser
from hirepipe.models.application import ApplicationListQuery
from hirepipe.services.applications import (
    claim_application,
    list_applications,
    release_claim,
    review_application,
    submit_application,
)
from hirepipe.services.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    ValidationError,
)

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


class _Transaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _candidate(candidate_id=None):
    return CurrentUser(id=uuid4(), email="cand@example.com", role="candidate", candidate_id=candidate_id or uuid4())


def _employer(employer_id):
    return CurrentUser(id=uuid4(), email="boss@example.com", role="employer", employer_id=employer_id)


def _admin():
    return CurrentUser(id=uuid4(), email="admin@example.com", role="admin")


class _SubmitConn:
    """Applications keyed by (candidate_id, job_id) like the storage unique constraint."""

    def __init__(self, job):
        self.job = job
        self.applications = {}

    def transaction(self):
        return _Transaction()

    async def fetchrow(self, query, *args):
        if "FROM jobs j" in query:
            return self.job
        if "INSERT INTO applications" in query:
            candidate_id, job_id, cover_letter, applied_at = args
            key = (candidate_id, job_id)
            if key in self.applications:
                return None
            row = {
                "id": uuid4(),
                "candidate_id": candidate_id,
                "job_id": job_id,
                "status": "pending",
                "cover_letter": cover_letter,
                "applied_at": applied_at,
            }
            self.applications[key] = row
            return row
        raise AssertionError(f"Unexpected fetchrow query: {query}")


def _job(**overrides):
    job = {
        "id": uuid4(),
        "title": "Staff Engineer",
        "status": "active",
        "deadline": None,
        "employer_id": uuid4(),
        "company_name": "Acme",
        "employer_email": "boss@example.com",
        "employer_name": "Boss",
    }
    job.update(overrides)
    return job


def test_duplicate_submission_is_conflict():
    job = _job()
    conn = _SubmitConn(job)
    actor = _candidate()

    result = asyncio.run(submit_application(conn, actor, job["id"], "  Hello  ", now=NOW))
    assert result.entity["status"] == "pending"
    assert result.entity["cover_letter"] == "Hello"
    assert [n.template_key for n in result.notifications] == ["application.received"]
    assert result.notifications[0].recipient.email == "boss@example.com"

    with pytest.raises(ConflictError, match="already applied"):
        asyncio.run(submit_application(conn, actor, job["id"], now=NOW))
    assert len(conn.applications) == 1


def test_submission_requires_active_job():
    conn = _SubmitConn(_job(status="closed"))
    with pytest.raises(InvalidStateError, match="not accepting applications"):
        asyncio.run(submit_application(conn, _candidate(), conn.job["id"], now=NOW))


def test_submission_after_deadline_rejected():
    conn = _SubmitConn(_job(deadline=NOW - timedelta(minutes=1)))
    with pytest.raises(InvalidStateError, match="deadline"):
        asyncio.run(submit_application(conn, _candidate(), conn.job["id"], now=NOW))


def test_only_candidates_can_submit():
    conn = _SubmitConn(_job())
    with pytest.raises(ForbiddenError):
        asyncio.run(submit_application(conn, _admin(), conn.job["id"], now=NOW))


class _ReviewConn:
    def __init__(self, application, has_offer=False):
        self.application = application
        self.has_offer = has_offer
        self.updates = []

    def transaction(self):
        return _Transaction()

    async def fetchrow(self, query, *args):
        if "FOR UPDATE OF a" in query:
            return dict(self.application)
        if "UPDATE applications" in query:
            application_id, status, reviewed_at, previous = args
            if self.application["status"] != previous:
                return None
            self.application["status"] = status
            self.application["reviewed_at"] = self.application.get("reviewed_at") or reviewed_at
            self.updates.append(status)
            return dict(self.application)
        raise AssertionError(f"Unexpected fetchrow query: {query}")

    async def fetchval(self, query, *args):
        if "FROM offers" in query:
            return self.has_offer
        raise AssertionError(f"Unexpected fetchval query: {query}")


def _application(employer_id, status="pending"):
    return {
        "id": uuid4(),
        "candidate_id": uuid4(),
        "job_id": uuid4(),
        "employer_id": employer_id,
        "status": status,
        "reviewed_at": None,
        "job_title": "Staff Engineer",
        "candidate_email": "cand@example.com",
        "candidate_name": "Casey Candidate",
        "company_name": "Acme",
        "employer_email": "boss@example.com",
        "employer_name": "Boss",
    }


def test_review_moves_forward_and_sets_reviewed_at():
    employer_id = uuid4()
    conn = _ReviewConn(_application(employer_id))

    result = asyncio.run(review_application(conn, _employer(employer_id), conn.application["id"], "shortlisted", now=NOW))

    assert result.entity["status"] == "shortlisted"
    assert result.entity["reviewed_at"] == NOW
    assert result.notifications[0].template_key == "application.status_changed"
    assert result.notifications[0].payload["previous_status"] == "pending"


def test_review_cannot_move_backwards():
    employer_id = uuid4()
    conn = _ReviewConn(_application(employer_id, status="shortlisted"))
    with pytest.raises(InvalidTransitionError, match="backwards"):
        asyncio.run(review_application(conn, _employer(employer_id), conn.application["id"], "reviewed", now=NOW))
    assert conn.updates == []


def test_review_to_offered_requires_offer():
    employer_id = uuid4()
    conn = _ReviewConn(_application(employer_id, status="interviewed"))
    with pytest.raises(InvalidStateError, match="without a pending offer"):
        asyncio.run(review_application(conn, _employer(employer_id), conn.application["id"], "offered", now=NOW))


def test_review_cannot_accept_on_candidates_behalf():
    employer_id = uuid4()
    conn = _ReviewConn(_application(employer_id, status="offered"), has_offer=True)

    with pytest.raises(InvalidTransitionError, match="only when the candidate accepts"):
        asyncio.run(review_application(conn, _employer(employer_id), conn.application["id"], "accepted", now=NOW))

    assert conn.application["status"] == "offered"
    assert conn.updates == []


def test_review_terminal_application_rejected():
    employer_id = uuid4()
    conn = _ReviewConn(_application(employer_id, status="rejected"))
    with pytest.raises(InvalidTransitionError, match="can no longer change"):
        asyncio.run(review_application(conn, _employer(employer_id), conn.application["id"], "shortlisted", now=NOW))


def test_review_by_other_employer_forbidden():
    conn = _ReviewConn(_application(uuid4()))
    with pytest.raises(ForbiddenError):
        asyncio.run(review_application(conn, _employer(uuid4()), conn.application["id"], "reviewed", now=NOW))


def test_employer_cannot_withdraw_for_candidate():
    employer_id = uuid4()
    conn = _ReviewConn(_application(employer_id))
    with pytest.raises(ValidationError, match="Only the candidate"):
        asyncio.run(review_application(conn, _employer(employer_id), conn.application["id"], "withdrawn", now=NOW))


class _ClaimConn:
    def __init__(self):
        self.row = {"id": uuid4(), "claim_status": "unclaimed", "claimed_by": None, "claimed_at": None, "claim_notes": None}

    def transaction(self):
        return _Transaction()

    async def fetchrow(self, query, *args):
        if "SET claim_status = 'claimed'" in query:
            _, admin_id, claimed_at, notes = args
            if self.row["claim_status"] != "unclaimed":
                return None
            self.row.update(claim_status="claimed", claimed_by=admin_id, claimed_at=claimed_at, claim_notes=notes)
            return dict(self.row)
        if "SET claim_status = 'unclaimed'" in query:
            _, admin_id = args
            if self.row["claim_status"] != "claimed" or self.row["claimed_by"] != admin_id:
                return None
            self.row.update(claim_status="unclaimed", claimed_by=None, claimed_at=None, claim_notes=None)
            return dict(self.row)
        if "SELECT claim_status, claimed_by FROM applications" in query:
            return {"claim_status": self.row["claim_status"], "claimed_by": self.row["claimed_by"]}
        if "SELECT claim_status FROM applications" in query:
            return {"claim_status": self.row["claim_status"]}
        raise AssertionError(f"Unexpected fetchrow query: {query}")


def test_claim_is_exclusive_until_released():
    conn = _ClaimConn()
    first, second = _admin(), _admin()

    result = asyncio.run(claim_application(conn, first, conn.row["id"], " following up ", now=NOW))
    assert result.entity["claimed_by"] == first.id
    assert result.entity["claim_notes"] == "following up"

    with pytest.raises(ConflictError, match="already claimed"):
        asyncio.run(claim_application(conn, second, conn.row["id"], now=NOW))

    with pytest.raises(ForbiddenError, match="Only the admin who claimed"):
        asyncio.run(release_claim(conn, second, conn.row["id"]))

    released = asyncio.run(release_claim(conn, first, conn.row["id"]))
    assert released.entity["claim_status"] == "unclaimed"

    reclaimed = asyncio.run(claim_application(conn, second, conn.row["id"], now=NOW))
    assert reclaimed.entity["claimed_by"] == second.id


def test_converted_application_cannot_be_claimed():
    conn = _ClaimConn()
    conn.row["claim_status"] = "converted"
    with pytest.raises(ConflictError, match="converted"):
        asyncio.run(claim_application(conn, _admin(), conn.row["id"], now=NOW))


def test_release_requires_claim():
    conn = _ClaimConn()
    with pytest.raises(InvalidStateError, match="not currently claimed"):
        asyncio.run(release_claim(conn, _admin(), conn.row["id"]))


def test_claim_requires_admin():
    conn = _ClaimConn()
    with pytest.raises(ForbiddenError):
        asyncio.run(claim_application(conn, _candidate(), conn.row["id"], now=NOW))


class _ListConn:
    def __init__(self):
        self.query = None
        self.args = None

    async def fetch(self, query, *args):
        self.query = query
        self.args = args
        return []


def test_list_applications_uses_numbered_parameters():
    conn = _ListConn()
    query = ApplicationListQuery(status="shortlisted", claim_status="claimed", search="  rust ", limit=20, offset=40)

    asyncio.run(list_applications(conn, query))

    assert "a.status = $1" in conn.query
    assert "a.claim_status = $2" in conn.query
    assert "c.name ILIKE $3 OR j.title ILIKE $3" in conn.query
    assert "LIMIT $4 OFFSET $5" in conn.query
    assert conn.args == ("shortlisted", "claimed", "%rust%", 20, 40)
