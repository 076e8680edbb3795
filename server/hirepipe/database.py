from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

_pool: Optional[asyncpg.Pool] = None


async def init_pool(database_url: str):
    """Initialize the connection pool."""
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(database_url, min_size=2, max_size=10)
    return _pool


async def get_pool() -> asyncpg.Pool:
    """Get the existing connection pool."""
    global _pool
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool first.")
    return _pool


async def close_pool():
    """Close the connection pool."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None


@asynccontextmanager
async def get_connection():
    """Get a database connection from the pool."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        yield conn


async def init_db():
    """Create tables if they don't exist.

    The UNIQUE constraints on applications, offers, placements and
    candidate_introductions decide concurrent duplicate inserts.
    """
    async with get_connection() as conn:
        # Users table (auth identities issued by the auth collaborator)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                email VARCHAR(255) NOT NULL UNIQUE,
                name VARCHAR(255),
                role VARCHAR(20) NOT NULL CHECK (role IN ('admin', 'employer', 'candidate')),
                is_active BOOLEAN DEFAULT true,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)

        # Employers
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS employers (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                user_id UUID NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
                company_name VARCHAR(255) NOT NULL,
                stripe_customer_id VARCHAR(255),
                total_spent BIGINT NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)

        # Service agreements (one signed agreement per employer)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS service_agreements (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                employer_id UUID NOT NULL UNIQUE REFERENCES employers(id) ON DELETE CASCADE,
                signed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                signer_name VARCHAR(255)
            )
        """)

        # Candidates
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS candidates (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                user_id UUID NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
                name VARCHAR(255),
                email VARCHAR(255),
                phone VARCHAR(50),
                headline VARCHAR(255),
                bio TEXT,
                skills TEXT[] DEFAULT '{}',
                experience_level VARCHAR(20) CHECK (
                    experience_level IN ('entry', 'mid', 'senior', 'executive')
                ),
                years_of_experience INTEGER,
                location VARCHAR(255),
                work_experience JSONB DEFAULT '[]'::jsonb,
                linkedin_url TEXT,
                github_url TEXT,
                portfolio_url TEXT,
                resume_url TEXT,
                is_available BOOLEAN NOT NULL DEFAULT true,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)

        # Jobs
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                employer_id UUID NOT NULL REFERENCES employers(id) ON DELETE CASCADE,
                title VARCHAR(255) NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'draft' CHECK (
                    status IN ('draft', 'active', 'closed', 'expired')
                ),
                experience_level VARCHAR(20) NOT NULL CHECK (
                    experience_level IN ('entry', 'mid', 'senior', 'executive')
                ),
                deadline TIMESTAMPTZ,
                expiry_notified_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_status_deadline ON jobs(status, deadline)
        """)

        # Applications (one per candidate/job pair)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS applications (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                candidate_id UUID NOT NULL REFERENCES candidates(id) ON DELETE CASCADE,
                job_id UUID NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                status VARCHAR(30) NOT NULL DEFAULT 'pending' CHECK (
                    status IN (
                        'pending', 'reviewed', 'shortlisted', 'interview_scheduled',
                        'interviewed', 'offered', 'accepted', 'rejected', 'withdrawn'
                    )
                ),
                cover_letter TEXT,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                reviewed_at TIMESTAMPTZ,
                claim_status VARCHAR(20) NOT NULL DEFAULT 'unclaimed' CHECK (
                    claim_status IN ('unclaimed', 'claimed', 'converted')
                ),
                claimed_by UUID REFERENCES users(id) ON DELETE SET NULL,
                claimed_at TIMESTAMPTZ,
                claim_notes TEXT,
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                CONSTRAINT uq_applications_candidate_job UNIQUE (candidate_id, job_id)
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_applications_job_status ON applications(job_id, status)
        """)

        # Interviews (reschedule history is a chain through rescheduled_from_id)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS interviews (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                application_id UUID NOT NULL REFERENCES applications(id) ON DELETE CASCADE,
                candidate_id UUID NOT NULL REFERENCES candidates(id) ON DELETE CASCADE,
                employer_id UUID NOT NULL REFERENCES employers(id) ON DELETE CASCADE,
                status VARCHAR(30) NOT NULL DEFAULT 'awaiting_candidate' CHECK (
                    status IN (
                        'awaiting_candidate', 'awaiting_confirmation', 'scheduled',
                        'confirmed', 'completed', 'rescheduled', 'cancelled'
                    )
                ),
                scheduled_at TIMESTAMPTZ,
                duration_minutes INTEGER NOT NULL CHECK (duration_minutes > 0),
                interview_type VARCHAR(30) NOT NULL DEFAULT 'video',
                round_number INTEGER,
                round_name VARCHAR(255),
                meeting_link TEXT,
                meeting_platform VARCHAR(50),
                notes TEXT,
                pending_reschedule BOOLEAN NOT NULL DEFAULT false,
                reschedule_reason TEXT,
                rescheduled_from_id UUID UNIQUE REFERENCES interviews(id) ON DELETE SET NULL,
                reminder_24h_sent_at TIMESTAMPTZ,
                reminder_1h_sent_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                CONSTRAINT chk_interviews_scheduled_at CHECK (
                    scheduled_at IS NULL
                    OR status IN ('scheduled', 'confirmed', 'completed')
                ),
                CONSTRAINT chk_interviews_no_self_reschedule CHECK (
                    rescheduled_from_id IS NULL OR rescheduled_from_id <> id
                )
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_interviews_application ON interviews(application_id)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_interviews_status_scheduled ON interviews(status, scheduled_at)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS interview_availability_slots (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                interview_id UUID NOT NULL REFERENCES interviews(id) ON DELETE CASCADE,
                start_time TIMESTAMPTZ NOT NULL,
                end_time TIMESTAMPTZ NOT NULL,
                CONSTRAINT chk_slot_window CHECK (end_time > start_time)
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS interview_slot_selections (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                interview_id UUID NOT NULL REFERENCES interviews(id) ON DELETE CASCADE,
                availability_slot_id UUID NOT NULL
                    REFERENCES interview_availability_slots(id) ON DELETE CASCADE,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                CONSTRAINT uq_slot_selection UNIQUE (interview_id, availability_slot_id)
            )
        """)

        # Offers (one per application)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS offers (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                application_id UUID NOT NULL UNIQUE REFERENCES applications(id) ON DELETE CASCADE,
                job_id UUID NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                candidate_id UUID NOT NULL REFERENCES candidates(id) ON DELETE CASCADE,
                employer_id UUID NOT NULL REFERENCES employers(id) ON DELETE CASCADE,
                position VARCHAR(255) NOT NULL,
                salary BIGINT NOT NULL CHECK (salary >= 0),
                start_date DATE NOT NULL,
                benefits TEXT,
                notes TEXT,
                status VARCHAR(20) NOT NULL DEFAULT 'pending' CHECK (
                    status IN ('pending', 'accepted', 'declined', 'expired', 'withdrawn')
                ),
                expires_at TIMESTAMPTZ NOT NULL,
                responded_at TIMESTAMPTZ,
                decline_reason TEXT,
                withdraw_reason TEXT,
                expiry_notified_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_offers_status_expires ON offers(status, expires_at)
        """)

        # Placements (exactly one per accepted offer)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS placements (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                offer_id UUID NOT NULL UNIQUE REFERENCES offers(id) ON DELETE RESTRICT,
                candidate_id UUID NOT NULL REFERENCES candidates(id),
                employer_id UUID NOT NULL REFERENCES employers(id),
                job_id UUID NOT NULL REFERENCES jobs(id),
                job_title VARCHAR(255) NOT NULL,
                salary BIGINT NOT NULL CHECK (salary >= 0),
                fee_percentage INTEGER NOT NULL CHECK (fee_percentage BETWEEN 0 AND 100),
                placement_fee BIGINT NOT NULL,
                upfront_amount BIGINT NOT NULL,
                remaining_amount BIGINT NOT NULL,
                start_date DATE NOT NULL,
                guarantee_period_days INTEGER NOT NULL DEFAULT 90,
                guarantee_end_date DATE NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'pending' CHECK (
                    status IN ('pending', 'confirmed', 'completed', 'cancelled')
                ),
                payment_status VARCHAR(20) NOT NULL DEFAULT 'pending' CHECK (
                    payment_status IN ('pending', 'upfront_paid', 'fully_paid')
                ),
                upfront_paid_at TIMESTAMPTZ,
                remaining_paid_at TIMESTAMPTZ,
                upfront_payment_intent_id VARCHAR(255),
                remaining_payment_intent_id VARCHAR(255),
                payment_reminder_sent_at TIMESTAMPTZ,
                guarantee_reminder_sent_at TIMESTAMPTZ,
                notes TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                CONSTRAINT chk_placement_fee_split CHECK (
                    upfront_amount + remaining_amount = placement_fee
                ),
                CONSTRAINT chk_placement_payment_order CHECK (
                    remaining_paid_at IS NULL OR upfront_paid_at IS NOT NULL
                )
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_placements_payment ON placements(payment_status, upfront_paid_at)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS placement_payments (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                placement_id UUID NOT NULL REFERENCES placements(id) ON DELETE CASCADE,
                payment_type VARCHAR(20) NOT NULL CHECK (
                    payment_type IN ('upfront', 'remaining', 'full')
                ),
                amount BIGINT NOT NULL CHECK (amount >= 0),
                method VARCHAR(30) NOT NULL,
                transaction_id VARCHAR(255),
                notes TEXT,
                recorded_by UUID REFERENCES users(id) ON DELETE SET NULL,
                recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)

        # Introductions (gated access negotiation per employer/candidate pair)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS candidate_introductions (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                employer_id UUID NOT NULL REFERENCES employers(id) ON DELETE CASCADE,
                candidate_id UUID NOT NULL REFERENCES candidates(id) ON DELETE CASCADE,
                status VARCHAR(30) NOT NULL DEFAULT 'profile_viewed' CHECK (
                    status IN (
                        'profile_viewed', 'intro_requested', 'introduced', 'interviewing',
                        'offer_extended', 'hired', 'candidate_declined', 'expired',
                        'closed_no_hire'
                    )
                ),
                candidate_response VARCHAR(20) CHECK (
                    candidate_response IN ('pending', 'accepted', 'declined', 'questions')
                ),
                job_id UUID REFERENCES jobs(id) ON DELETE SET NULL,
                intro_requested_at TIMESTAMPTZ,
                introduced_at TIMESTAMPTZ,
                candidate_responded_at TIMESTAMPTZ,
                candidate_message TEXT,
                response_token VARCHAR(64) UNIQUE,
                response_token_expires_at TIMESTAMPTZ,
                protection_ends_at TIMESTAMPTZ,
                protection_warning_sent_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                CONSTRAINT uq_introductions_employer_candidate UNIQUE (employer_id, candidate_id)
            )
        """)

        # Expiry sweep audit log
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS sweep_runs (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                kind VARCHAR(40) NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                finished_at TIMESTAMPTZ NOT NULL,
                scanned INTEGER NOT NULL DEFAULT 0,
                transitioned INTEGER NOT NULL DEFAULT 0,
                notified INTEGER NOT NULL DEFAULT 0,
                errors JSONB NOT NULL DEFAULT '[]'::jsonb
            )
        """)

        # Scheduler toggles read by the worker on startup
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS scheduler_settings (
                task_key VARCHAR(100) PRIMARY KEY,
                enabled BOOLEAN NOT NULL DEFAULT false,
                max_per_cycle INTEGER,
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
