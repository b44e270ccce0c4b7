"""001 – Initial schema: users, leave requests, approvals, balances, holidays, audit, notifications.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 10:00:00.000000+06:00
"""

from alembic import op
import sqlalchemy as sa  # noqa: F401

# Revision identifiers
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ENUM_TYPES: list[tuple[str, list[str]]] = [
    ("user_role", ["employee", "dept_head", "hr_admin", "hr_head", "ceo"]),
    ("leave_type", ["earned", "casual", "medical", "special", "extraordinary"]),
    (
        "leave_status",
        [
            "submitted",
            "pending",
            "returned",
            "approved",
            "rejected",
            "cancelled",
            "cancellation_requested",
            "recalled",
            "overstay_pending",
        ],
    ),
    (
        "approval_decision",
        ["pending", "approved", "rejected", "forwarded", "returned"],
    ),
    ("approval_flow", ["request", "cancellation", "duty_return"]),
    (
        "notification_kind",
        [
            "approval_required",
            "leave_forwarded",
            "leave_approved",
            "leave_rejected",
            "leave_returned",
            "leave_recalled",
            "leave_cancelled",
            "overstay_flagged",
        ],
    ),
]


def _create_enum(name: str, values: list[str]) -> None:
    vals = ", ".join(f"'{v}'" for v in values)
    op.execute(f"CREATE TYPE {name} AS ENUM ({vals})")


def _drop_enum(name: str) -> None:
    op.execute(f"DROP TYPE IF EXISTS {name}")


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    for name, values in ENUM_TYPES:
        _create_enum(name, values)

    # ── 1. users ──────────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE users (
            id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email       VARCHAR(255) NOT NULL UNIQUE,
            full_name   VARCHAR(200) NOT NULL,
            role        user_role NOT NULL DEFAULT 'employee',
            department  VARCHAR(50),
            is_active   BOOLEAN NOT NULL DEFAULT TRUE,
            created_at  TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX idx_users_role_department ON users(role, department)")

    # ── 2. holidays ───────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE holidays (
            id           UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            date         DATE NOT NULL UNIQUE,
            name         VARCHAR(200) NOT NULL,
            is_optional  BOOLEAN NOT NULL DEFAULT FALSE
        )
    """)

    # ── 3. leave_requests ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_requests (
            id                       UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            requester_id             UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            leave_type               leave_type NOT NULL,
            start_date               DATE NOT NULL,
            end_date                 DATE NOT NULL,
            working_days             INTEGER NOT NULL,
            status                   leave_status NOT NULL DEFAULT 'submitted',
            reason                   TEXT,
            policy_version           VARCHAR(20) NOT NULL,
            certificate_url          VARCHAR(500),
            fitness_certificate_url  VARCHAR(500),
            cancellation_reason      TEXT,
            is_partial_cancellation  BOOLEAN NOT NULL DEFAULT FALSE,
            cancellation_end_date    DATE,
            original_end_date        DATE,
            return_confirmed         BOOLEAN NOT NULL DEFAULT FALSE,
            overstay_flagged_at      TIMESTAMPTZ,
            allocations              JSONB,
            consumed_allocations     JSONB,
            created_at               TIMESTAMPTZ DEFAULT NOW(),
            updated_at               TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_leave_requests_dates CHECK (end_date >= start_date),
            CONSTRAINT ck_leave_requests_working_days CHECK (working_days > 0)
        )
    """)
    op.execute(
        "CREATE INDEX ix_leave_requests_requester ON leave_requests(requester_id, start_date)"
    )
    op.execute("CREATE INDEX ix_leave_requests_status ON leave_requests(status)")

    # ── 4. approvals ──────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE approvals (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            leave_id        UUID NOT NULL REFERENCES leave_requests(id) ON DELETE CASCADE,
            step            INTEGER NOT NULL,
            flow            approval_flow NOT NULL DEFAULT 'request',
            chain_position  INTEGER NOT NULL DEFAULT 0,
            approver_role   user_role NOT NULL,
            approver_id     UUID REFERENCES users(id),
            decision        approval_decision NOT NULL DEFAULT 'pending',
            to_role         user_role,
            comment         TEXT,
            decided_by      UUID REFERENCES users(id),
            decided_at      TIMESTAMPTZ,
            created_at      TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_approvals_leave_step UNIQUE (leave_id, step)
        )
    """)
    op.execute("CREATE INDEX ix_approvals_leave_decision ON approvals(leave_id, decision)")
    # At most one undecided step per request
    op.execute("""
        CREATE UNIQUE INDEX uq_approvals_one_pending
            ON approvals(leave_id)
            WHERE decision = 'pending'
    """)

    # ── 5. leave_balances ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_balances (
            id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id     UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            leave_type  leave_type NOT NULL,
            year        INTEGER NOT NULL,
            opening     INTEGER NOT NULL DEFAULT 0,
            accrued     INTEGER NOT NULL DEFAULT 0,
            used        INTEGER NOT NULL DEFAULT 0,
            closing     INTEGER NOT NULL DEFAULT 0,
            updated_at  TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_leave_balances_user_type_year UNIQUE (user_id, leave_type, year),
            CONSTRAINT ck_leave_balances_used CHECK (used >= 0)
        )
    """)

    # ── 6. audit_trail ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE audit_trail (
            id           UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            actor_id     UUID,
            action       VARCHAR(50) NOT NULL,
            entity_type  VARCHAR(50) NOT NULL,
            entity_id    UUID NOT NULL,
            period       VARCHAR(10),
            old_values   JSONB,
            new_values   JSONB,
            created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_audit_trail_action_entity_period UNIQUE (action, entity_id, period)
        )
    """)
    op.execute("CREATE INDEX idx_audit_entity ON audit_trail(entity_type, entity_id)")
    op.execute("CREATE INDEX idx_audit_created ON audit_trail(created_at)")

    # ── 7. notification_intents ───────────────────────────────────────────
    op.execute("""
        CREATE TABLE notification_intents (
            id            UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            recipient_id  UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            kind          notification_kind NOT NULL,
            leave_id      UUID NOT NULL,
            title         VARCHAR(200) NOT NULL,
            message       TEXT NOT NULL,
            delivered_at  TIMESTAMPTZ,
            created_at    TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute(
        "CREATE INDEX ix_notification_intents_undelivered"
        " ON notification_intents(delivered_at, created_at)"
    )


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    # Drop tables in reverse dependency order
    tables = [
        "notification_intents",
        "audit_trail",
        "leave_balances",
        "approvals",
        "leave_requests",
        "holidays",
        "users",
    ]
    for t in tables:
        op.execute(f"DROP TABLE IF EXISTS {t} CASCADE")

    for name, _ in reversed(ENUM_TYPES):
        _drop_enum(name)
