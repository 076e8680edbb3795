import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from hirepipe.core.models.auth import CurrentUser
from hirepipe.models.interview import AvailabilitySlotInput
from hirepipe.services.availability import (
    cancel_interview,
    complete_interview,
    confirm_slot,
    propose_slots,
    request_reschedule,
    reschedule_chain,
    select_slots,
)
from hirepipe.services.errors import (
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


class _Transaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _InterviewConn:
    def __init__(self, status="awaiting_candidate", slot_starts=None):
        self.candidate_id = uuid4()
        self.employer_id = uuid4()
        starts = slot_starts or [NOW + timedelta(days=1), NOW + timedelta(days=2), NOW + timedelta(days=3)]
        self.slots = {uuid4(): start for start in starts}
        self.selections = set()
        self.application_updates = []
        self.interview = {
            "id": uuid4(),
            "application_id": uuid4(),
            "candidate_id": self.candidate_id,
            "employer_id": self.employer_id,
            "status": status,
            "scheduled_at": None,
            "duration_minutes": 45,
            "pending_reschedule": False,
            "notes": None,
        }

    def transaction(self):
        return _Transaction()

    async def fetchrow(self, query, *args):
        if "FROM interviews i" in query:
            row = dict(self.interview)
            row.update(
                job_title="Staff Engineer",
                candidate_email="cand@example.com",
                candidate_name="Casey Candidate",
                company_name="Acme",
                employer_email="boss@example.com",
                employer_name="Boss",
            )
            return row
        if "FROM interview_slot_selections sel" in query:
            _, slot_id = args
            if slot_id not in self.selections:
                return None
            start = self.slots[slot_id]
            return {"id": slot_id, "start_time": start, "end_time": start + timedelta(hours=1)}
        if "SET status = 'awaiting_confirmation'" in query:
            if self.interview["status"] != args[1]:
                return None
            self.interview["status"] = "awaiting_confirmation"
            return dict(self.interview)
        if "SET status = 'scheduled'" in query:
            if self.interview["status"] != "awaiting_confirmation":
                return None
            self.interview.update(status="scheduled", scheduled_at=args[1], meeting_link=args[2])
            return dict(self.interview)
        if "SET pending_reschedule = true" in query:
            self.interview.update(pending_reschedule=True, reschedule_reason=args[1])
            return dict(self.interview)
        if "SET status = 'completed'" in query:
            if self.interview["status"] != args[1]:
                return None
            self.interview.update(status="completed", pending_reschedule=False)
            return dict(self.interview)
        if "SET status = 'cancelled'" in query:
            if self.interview["status"] != args[1]:
                return None
            self.interview.update(status="cancelled", scheduled_at=None, pending_reschedule=False)
            if args[2] is not None:
                self.interview["notes"] = f"[Cancelled] {args[2]}"
            return dict(self.interview)
        raise AssertionError(f"Unexpected fetchrow query: {query}")

    async def fetch(self, query, *args):
        if "FROM interview_availability_slots" in query:
            _, slot_ids = args
            return [{"id": slot_id} for slot_id in slot_ids if slot_id in self.slots]
        raise AssertionError(f"Unexpected fetch query: {query}")

    async def execute(self, query, *args):
        if "DELETE FROM interview_slot_selections" in query:
            if len(args) == 1:
                self.selections.clear()
            else:
                self.selections.discard(args[1])
            return "DELETE"
        if "UPDATE applications SET status = 'interviewed'" in query:
            self.application_updates.append(args[0])
            return "UPDATE 1"
        raise AssertionError(f"Unexpected execute query: {query}")

    async def executemany(self, query, rows):
        if "INSERT INTO interview_slot_selections" in query:
            self.selections.update(slot_id for _, slot_id in rows)
            return None
        raise AssertionError(f"Unexpected executemany query: {query}")


def _candidate(conn):
    return CurrentUser(id=uuid4(), email="cand@example.com", role="candidate", candidate_id=conn.candidate_id)


def _employer(conn):
    return CurrentUser(id=uuid4(), email="boss@example.com", role="employer", employer_id=conn.employer_id)


def test_selection_moves_interview_to_awaiting_confirmation():
    conn = _InterviewConn()
    first, second, _ = list(conn.slots)

    result = asyncio.run(select_slots(conn, _candidate(conn), conn.interview["id"], [first, second, first]))

    assert result.entity["status"] == "awaiting_confirmation"
    assert conn.selections == {first, second}
    assert result.extra["selected_slot_ids"] == [str(first), str(second)]
    assert result.notifications[0].template_key == "interview.slots_selected"


def test_selection_replaces_stale_rows():
    conn = _InterviewConn()
    first, _, third = list(conn.slots)
    conn.selections = {first}

    asyncio.run(select_slots(conn, _candidate(conn), conn.interview["id"], [third]))

    assert conn.selections == {third}


def test_second_selection_is_rejected():
    conn = _InterviewConn()
    first, second, third = list(conn.slots)
    asyncio.run(select_slots(conn, _candidate(conn), conn.interview["id"], [first, second]))

    with pytest.raises(InvalidStateError, match="status: awaiting_confirmation"):
        asyncio.run(select_slots(conn, _candidate(conn), conn.interview["id"], [third]))

    assert conn.selections == {first, second}
    assert conn.interview["status"] == "awaiting_confirmation"


def test_selection_rejects_foreign_slots():
    conn = _InterviewConn()
    with pytest.raises(ValidationError, match="do not belong"):
        asyncio.run(select_slots(conn, _candidate(conn), conn.interview["id"], [uuid4()]))
    assert conn.selections == set()


def test_only_the_interviewed_candidate_can_select():
    conn = _InterviewConn()
    stranger = CurrentUser(id=uuid4(), email="x@example.com", role="candidate", candidate_id=uuid4())
    with pytest.raises(ForbiddenError):
        asyncio.run(select_slots(conn, stranger, conn.interview["id"], list(conn.slots)[:1]))
    with pytest.raises(ForbiddenError):
        asyncio.run(select_slots(conn, _employer(conn), conn.interview["id"], list(conn.slots)[:1]))


def test_selection_closed_once_scheduled():
    conn = _InterviewConn(status="scheduled")
    with pytest.raises(InvalidStateError, match="status: scheduled"):
        asyncio.run(select_slots(conn, _candidate(conn), conn.interview["id"], list(conn.slots)[:1]))


def test_confirm_schedules_selected_slot():
    conn = _InterviewConn()
    slot_id = list(conn.slots)[0]
    asyncio.run(select_slots(conn, _candidate(conn), conn.interview["id"], [slot_id]))

    result = asyncio.run(confirm_slot(conn, _employer(conn), conn.interview["id"], slot_id, now=NOW))

    assert result.entity["status"] == "scheduled"
    assert result.entity["scheduled_at"] == conn.slots[slot_id]
    assert [n.recipient.role for n in result.notifications] == ["candidate", "employer"]


def test_confirm_rejects_unselected_slot():
    conn = _InterviewConn()
    chosen, other = list(conn.slots)[:2]
    asyncio.run(select_slots(conn, _candidate(conn), conn.interview["id"], [chosen]))

    with pytest.raises(ValidationError, match="not selected"):
        asyncio.run(confirm_slot(conn, _employer(conn), conn.interview["id"], other, now=NOW))


def test_confirm_past_slot_drops_it_and_expires():
    conn = _InterviewConn(slot_starts=[NOW - timedelta(minutes=5), NOW + timedelta(days=1)])
    past, future = list(conn.slots)
    asyncio.run(select_slots(conn, _candidate(conn), conn.interview["id"], [past, future]))

    with pytest.raises(ExpiredError, match="already started"):
        asyncio.run(confirm_slot(conn, _employer(conn), conn.interview["id"], past, now=NOW))

    assert conn.selections == {future}
    assert conn.interview["status"] == "awaiting_confirmation"


def test_propose_requires_slots():
    conn = _InterviewConn()
    with pytest.raises(ValidationError, match="At least one"):
        asyncio.run(propose_slots(conn, _employer(conn), uuid4(), [], 30, now=NOW))


class _ProposeConn:
    def __init__(self, application_status="shortlisted", previous=None):
        self.employer_id = uuid4()
        self.candidate_id = uuid4()
        self.application = {
            "id": uuid4(),
            "status": application_status,
            "employer_id": self.employer_id,
            "candidate_id": self.candidate_id,
            "job_title": "Staff Engineer",
            "candidate_email": "cand@example.com",
            "candidate_name": "Casey Candidate",
            "company_name": "Acme",
        }
        # Booked interview carrying a reschedule request, if any
        self.previous = previous
        self.archived = []
        self.inserted = []
        self.slot_rows = []
        self.application_updates = []
        self.introduction_updates = []

    def transaction(self):
        return _Transaction()

    async def fetchrow(self, query, *args):
        if "FOR UPDATE OF a" in query:
            return dict(self.application)
        if "pending_reschedule = true" in query and query.lstrip().startswith("SELECT"):
            return dict(self.previous) if self.previous else None
        if "SET status = 'rescheduled'" in query:
            interview_id, status, notes = args
            if self.previous is None or self.previous["status"] != status:
                return None
            self.previous.update(status="rescheduled", scheduled_at=None, pending_reschedule=False, notes=notes)
            self.archived.append(interview_id)
            return {"id": interview_id}
        if "INSERT INTO interviews" in query:
            row = {
                "id": uuid4(),
                "application_id": args[0],
                "candidate_id": args[1],
                "employer_id": args[2],
                "status": "awaiting_candidate",
                "duration_minutes": args[3],
                "interview_type": args[4],
                "round_number": args[5],
                "round_name": args[6],
                "rescheduled_from_id": args[7],
            }
            self.inserted.append(row)
            return row
        raise AssertionError(f"Unexpected fetchrow query: {query}")

    async def executemany(self, query, rows):
        if "INSERT INTO interview_availability_slots" in query:
            self.slot_rows.extend(rows)
            return None
        raise AssertionError(f"Unexpected executemany query: {query}")

    async def execute(self, query, *args):
        if "UPDATE applications SET status = 'interview_scheduled'" in query:
            self.application_updates.append(args)
            return "UPDATE 1"
        if "UPDATE candidate_introductions" in query:
            self.introduction_updates.append(args[2])
            return "UPDATE 1"
        raise AssertionError(f"Unexpected execute query: {query}")


def _slots(count=2):
    starts = [NOW + timedelta(days=day) for day in range(1, count + 1)]
    return [AvailabilitySlotInput(start_time=start, end_time=start + timedelta(hours=1)) for start in starts]


def _proposer(conn):
    return CurrentUser(id=uuid4(), email="boss@example.com", role="employer", employer_id=conn.employer_id)


def test_propose_opens_interview_and_schedules_application():
    conn = _ProposeConn()

    result = asyncio.run(propose_slots(
        conn, _proposer(conn), conn.application["id"], _slots(3), 45, round_name="Phone Screen", now=NOW,
    ))

    assert result.entity["status"] == "awaiting_candidate"
    assert result.entity["rescheduled_from_id"] is None
    assert len(conn.slot_rows) == 3
    assert conn.application_updates == [(conn.application["id"], "shortlisted")]
    assert conn.introduction_updates == ["interviewing"]
    notice = result.notifications[0]
    assert notice.template_key == "interview.slots_proposed"
    assert notice.payload["slot_count"] == 3
    assert notice.payload["rescheduled"] is False


def test_propose_next_round_alongside_booked_interview():
    # A booked interview without a reschedule request is left alone
    conn = _ProposeConn(application_status="interview_scheduled")

    result = asyncio.run(propose_slots(conn, _proposer(conn), conn.application["id"], _slots(), 60, now=NOW))

    assert result.entity["status"] == "awaiting_candidate"
    assert conn.archived == []
    assert len(conn.inserted) == 1
    assert conn.application_updates == []


def test_propose_replaces_interview_with_pending_reschedule():
    previous_id = uuid4()
    conn = _ProposeConn(
        application_status="interview_scheduled",
        previous={
            "id": previous_id,
            "status": "scheduled",
            "scheduled_at": NOW + timedelta(days=1),
            "pending_reschedule": True,
            "reschedule_reason": "Sick day",
            "notes": None,
        },
    )

    result = asyncio.run(propose_slots(conn, _proposer(conn), conn.application["id"], _slots(), 30, now=NOW))

    assert conn.archived == [previous_id]
    assert conn.previous["status"] == "rescheduled"
    assert conn.previous["scheduled_at"] is None
    assert conn.previous["notes"].startswith("[Rescheduled] previously at 2026-03-03")
    assert conn.previous["notes"].endswith(": Sick day")
    assert result.entity["rescheduled_from_id"] == previous_id
    assert result.notifications[0].payload["rescheduled"] is True


def test_propose_blocked_while_offer_outstanding():
    conn = _ProposeConn(application_status="offered")
    with pytest.raises(InvalidStateError, match="offered"):
        asyncio.run(propose_slots(conn, _proposer(conn), conn.application["id"], _slots(), 30, now=NOW))
    assert conn.inserted == []


def test_complete_marks_application_interviewed():
    conn = _InterviewConn(status="scheduled")

    result = asyncio.run(complete_interview(conn, _employer(conn), conn.interview["id"]))

    assert result.entity["status"] == "completed"
    assert conn.application_updates == [conn.interview["application_id"]]


def test_complete_requires_booked_interview():
    conn = _InterviewConn(status="awaiting_candidate")
    with pytest.raises(InvalidTransitionError, match="'awaiting_candidate' -> 'completed'"):
        asyncio.run(complete_interview(conn, _employer(conn), conn.interview["id"]))
    assert conn.application_updates == []

    with pytest.raises(ForbiddenError):
        asyncio.run(complete_interview(conn, _candidate(conn), conn.interview["id"]))


def test_candidate_cancel_notifies_employer():
    conn = _InterviewConn(status="scheduled")

    result = asyncio.run(cancel_interview(conn, _candidate(conn), conn.interview["id"], "  Took another job "))

    assert result.entity["status"] == "cancelled"
    assert result.entity["notes"] == "[Cancelled] Took another job"
    notice = result.notifications[0]
    assert notice.recipient.role == "employer"
    assert notice.template_key == "interview.cancelled"
    assert notice.payload["cancelled_by"] == "candidate"


def test_cancel_is_final():
    conn = _InterviewConn(status="cancelled")
    with pytest.raises(InvalidTransitionError):
        asyncio.run(cancel_interview(conn, _employer(conn), conn.interview["id"]))

    stranger = CurrentUser(id=uuid4(), email="x@example.com", role="employer", employer_id=uuid4())
    open_conn = _InterviewConn()
    with pytest.raises(ForbiddenError):
        asyncio.run(cancel_interview(open_conn, stranger, open_conn.interview["id"]))


def test_reschedule_request_only_for_booked_interviews():
    conn = _InterviewConn(status="awaiting_candidate")
    with pytest.raises(InvalidStateError):
        asyncio.run(request_reschedule(conn, _employer(conn), conn.interview["id"], "Conflict"))

    booked = _InterviewConn(status="scheduled")
    result = asyncio.run(request_reschedule(booked, _candidate(booked), booked.interview["id"], " Sick day "))
    assert result.entity["pending_reschedule"] is True
    assert result.notifications[0].recipient.role == "employer"
    assert result.notifications[0].payload["reason"] == "Sick day"


class _ChainConn:
    def __init__(self, rows):
        self.rows = {row["id"]: row for row in rows}

    async def fetchrow(self, query, *args):
        return self.rows.get(args[0])


def _chain_row(row_id, previous_id, status="rescheduled"):
    return {
        "id": row_id,
        "status": status,
        "scheduled_at": None,
        "rescheduled_from_id": previous_id,
        "reschedule_reason": None,
        "notes": None,
        "created_at": NOW,
    }


def test_reschedule_chain_walks_to_root():
    root, middle, latest = uuid4(), uuid4(), uuid4()
    conn = _ChainConn([
        _chain_row(root, None),
        _chain_row(middle, root),
        _chain_row(latest, middle, status="scheduled"),
    ])

    chain = asyncio.run(reschedule_chain(conn, latest))

    assert [row["id"] for row in chain] == [latest, middle, root]


def test_reschedule_chain_detects_cycle():
    first, second = uuid4(), uuid4()
    conn = _ChainConn([_chain_row(first, second), _chain_row(second, first)])

    with pytest.raises(InvalidStateError, match="cycle"):
        asyncio.run(reschedule_chain(conn, first))


def test_reschedule_chain_is_bounded():
    ids = [uuid4() for _ in range(6)]
    rows = [_chain_row(ids[0], None)] + [_chain_row(ids[i], ids[i - 1]) for i in range(1, 6)]
    conn = _ChainConn(rows)

    with pytest.raises(InvalidStateError, match="exceeds 3"):
        asyncio.run(reschedule_chain(conn, ids[-1], max_hops=3))


def test_reschedule_chain_unknown_interview():
    with pytest.raises(NotFoundError):
        asyncio.run(reschedule_chain(_ChainConn([]), uuid4()))
