"""001 – Initial schema: employees, leave ledger, holidays, reminders, audit.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-16 09:00:00.000000+00:00
"""

from alembic import op
import sqlalchemy as sa

# Revision identifiers
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ENUM_TYPES: list[tuple[str, list[str]]] = [
    ("user_role", ["employee", "manager", "hr", "admin"]),
    ("leave_status", ["pending", "approved", "rejected", "cancelled"]),
    (
        "notification_type",
        ["info", "action_required", "approval", "reminder", "alert"],
    ),
    ("notification_frequency", ["weekly", "monthly", "custom"]),
    ("notifier_status", ["active", "inactive", "failed"]),
    ("delivery_status", ["sent", "failed", "pending", "retrying"]),
    ("reminder_kind", ["document_expiry", "balance_low"]),
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
    # ── Extensions ────────────────────────────────────────────────────────
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ── Enum types ────────────────────────────────────────────────────────
    for name, values in ENUM_TYPES:
        _create_enum(name, values)

    # ── 1. employees ──────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE employees (
            id            UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            email         VARCHAR(255) NOT NULL UNIQUE,
            full_name     VARCHAR(255) NOT NULL,
            role          user_role NOT NULL DEFAULT 'employee',
            manager_id    UUID REFERENCES employees(id),
            hire_date     DATE NOT NULL,
            country_code  VARCHAR(2),
            is_active     BOOLEAN DEFAULT TRUE,
            created_at    TIMESTAMPTZ DEFAULT NOW(),
            updated_at    TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX ix_employees_manager_id ON employees(manager_id)")

    # ── 2. public_holidays ────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE public_holidays (
            id            UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            name          VARCHAR(150) NOT NULL,
            date          DATE NOT NULL,
            country_code  VARCHAR(2) NOT NULL,
            is_recurring  BOOLEAN DEFAULT FALSE,
            created_at    TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_holiday_country_date UNIQUE (country_code, date)
        )
    """)
    op.execute("CREATE INDEX ix_public_holidays_country ON public_holidays(country_code)")

    # ── 3. leave_types ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_types (
            id                       UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            code                     VARCHAR(10) NOT NULL UNIQUE,
            name                     VARCHAR(100) NOT NULL,
            description              TEXT,
            default_allocation_days  NUMERIC(5,1) DEFAULT 0,
            max_carryover_days       NUMERIC(5,1) DEFAULT 0,
            accrual_rules            JSONB DEFAULT '{}',
            requires_approval        BOOLEAN DEFAULT TRUE,
            max_days_per_request     INTEGER,
            is_active                BOOLEAN DEFAULT TRUE,
            created_at               TIMESTAMPTZ DEFAULT NOW(),
            updated_at               TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 4. leave_balances (ledger) ────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_balances (
            id              UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_id     UUID NOT NULL REFERENCES employees(id),
            leave_type_id   UUID NOT NULL REFERENCES leave_types(id),
            year            INTEGER NOT NULL,
            allocated_days  NUMERIC(5,1) NOT NULL DEFAULT 0,
            used_days       NUMERIC(5,1) NOT NULL DEFAULT 0,
            pending_days    NUMERIC(5,1) NOT NULL DEFAULT 0,
            carryover_days  NUMERIC(5,1) NOT NULL DEFAULT 0,
            created_at      TIMESTAMPTZ DEFAULT NOW(),
            updated_at      TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_leave_balance UNIQUE (employee_id, leave_type_id, year),
            CONSTRAINT ck_balance_allocated CHECK (allocated_days >= 0),
            CONSTRAINT ck_balance_used      CHECK (used_days >= 0),
            CONSTRAINT ck_balance_pending   CHECK (pending_days >= 0),
            CONSTRAINT ck_balance_carryover CHECK (carryover_days >= 0),
            CONSTRAINT ck_balance_available CHECK (
                allocated_days + carryover_days - used_days - pending_days >= 0
            )
        )
    """)
    op.execute(
        "CREATE INDEX ix_leave_balances_employee_year ON leave_balances(employee_id, year)"
    )

    # ── 5. leave_requests ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_requests (
            id                 UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            requester_id       UUID NOT NULL REFERENCES employees(id),
            leave_type_id      UUID NOT NULL REFERENCES leave_types(id),
            start_date         DATE NOT NULL,
            end_date           DATE NOT NULL,
            days_count         INTEGER NOT NULL,
            reason             TEXT,
            status             leave_status NOT NULL DEFAULT 'pending',
            approver_id        UUID REFERENCES employees(id),
            approver_comments  TEXT,
            rejection_reason   TEXT,
            approved_at        TIMESTAMPTZ,
            rejected_at        TIMESTAMPTZ,
            cancelled_at       TIMESTAMPTZ,
            cancelled_by       UUID REFERENCES employees(id),
            created_at         TIMESTAMPTZ DEFAULT NOW(),
            updated_at         TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_leave_valid_range    CHECK (end_date >= start_date),
            CONSTRAINT ck_leave_positive_days  CHECK (days_count > 0)
        )
    """)
    op.execute(
        "CREATE INDEX ix_leave_requests_requester_status "
        "ON leave_requests(requester_id, status)"
    )
    op.execute("CREATE INDEX ix_leave_requests_dates ON leave_requests(start_date, end_date)")

    # ── 6. notifications (in-app inbox) ───────────────────────────────────
    op.execute("""
        CREATE TABLE notifications (
            id            UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            recipient_id  UUID NOT NULL REFERENCES employees(id) ON DELETE CASCADE,
            type          notification_type DEFAULT 'info',
            title         VARCHAR(200) NOT NULL,
            message       TEXT NOT NULL,
            action_url    VARCHAR(500),
            entity_type   VARCHAR(50),
            entity_id     UUID,
            is_read       BOOLEAN DEFAULT FALSE,
            read_at       TIMESTAMPTZ,
            created_at    TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute(
        "CREATE INDEX ix_notifications_recipient_read ON notifications(recipient_id, is_read)"
    )

    # ── 7. document_notifiers ─────────────────────────────────────────────
    op.execute("""
        CREATE TABLE document_notifiers (
            id                     UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            user_id                UUID NOT NULL REFERENCES employees(id) ON DELETE CASCADE,
            document_id            UUID NOT NULL,
            document_name          VARCHAR(255) NOT NULL,
            expires_at             DATE NOT NULL,
            frequency              notification_frequency NOT NULL DEFAULT 'weekly',
            custom_frequency_days  INTEGER,
            advance_notice_days    INTEGER DEFAULT 30,
            last_sent              TIMESTAMPTZ,
            next_due               TIMESTAMPTZ NOT NULL,
            delivery_attempts      INTEGER DEFAULT 0,
            status                 notifier_status NOT NULL DEFAULT 'active',
            created_at             TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_document_notifier UNIQUE (user_id, document_id),
            CONSTRAINT ck_notifier_advance_notice CHECK (advance_notice_days >= 0),
            CONSTRAINT ck_notifier_custom_days CHECK (
                frequency != 'custom' OR custom_frequency_days > 0
            )
        )
    """)
    op.execute("CREATE INDEX ix_document_notifiers_due ON document_notifiers(status, next_due)")

    # ── 8. notification_logs (append-only) ───────────────────────────────
    op.execute("""
        CREATE TABLE notification_logs (
            id                 UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            notifier_id        UUID REFERENCES document_notifiers(id) ON DELETE SET NULL,
            recipient_id       UUID NOT NULL REFERENCES employees(id),
            notification_type  reminder_kind NOT NULL,
            template_id        VARCHAR(100) NOT NULL,
            dedupe_key         VARCHAR(255) NOT NULL,
            status             delivery_status NOT NULL,
            attempts           INTEGER DEFAULT 1,
            error_message      TEXT,
            sent_at            TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX ix_notification_logs_notifier ON notification_logs(notifier_id)")
    op.execute(
        "CREATE INDEX ix_notification_logs_dedupe ON notification_logs(dedupe_key, status)"
    )

    # ── 9. scheduler_leases ───────────────────────────────────────────────
    op.execute("""
        CREATE TABLE scheduler_leases (
            name         VARCHAR(100) PRIMARY KEY,
            holder       VARCHAR(255) NOT NULL,
            acquired_at  TIMESTAMPTZ NOT NULL,
            expires_at   TIMESTAMPTZ NOT NULL
        )
    """)

    # ── 10. audit_trail ───────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE audit_trail (
            id           UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            actor_id     UUID REFERENCES employees(id),
            action       VARCHAR(50) NOT NULL,
            entity_type  VARCHAR(50) NOT NULL,
            entity_id    UUID NOT NULL,
            old_values   JSONB,
            new_values   JSONB,
            created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX ix_audit_trail_actor_id   ON audit_trail(actor_id)")
    op.execute("CREATE INDEX ix_audit_trail_entity     ON audit_trail(entity_type, entity_id)")
    op.execute("CREATE INDEX ix_audit_trail_created_at ON audit_trail(created_at)")

    # ══════════════════════════════════════════════════════════════════════
    # SEED DATA
    # ══════════════════════════════════════════════════════════════════════

    op.execute("""
        INSERT INTO leave_types
            (code, name, description, default_allocation_days, max_carryover_days,
             accrual_rules, requires_approval, max_days_per_request)
        VALUES
            ('AL',  'Annual Leave',      'Regular annual leave',           25, 5,
             '{"type": "annual", "prorate_first_year": true}', TRUE, 30),
            ('SL',  'Sick Leave',        'Leave for medical reasons',      10, 0,
             '{"type": "monthly", "rate": "0.8", "max_accrual_cap": "10"}', TRUE, 10),
            ('PL',  'Personal Leave',    'Personal time off',               5, 0,
             '{"type": "annual", "prorate_first_year": false}', TRUE, 5),
            ('BL',  'Bereavement Leave', 'Leave for family bereavement',    5, 0,
             '{}', FALSE, 5)
    """)


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    # Drop tables in reverse dependency order
    tables = [
        "audit_trail",
        "scheduler_leases",
        "notification_logs",
        "document_notifiers",
        "notifications",
        "leave_requests",
        "leave_balances",
        "leave_types",
        "public_holidays",
        "employees",
    ]
    for t in tables:
        op.execute(f"DROP TABLE IF EXISTS {t} CASCADE")

    for name, _ in reversed(ENUM_TYPES):
        _drop_enum(name)

    op.execute('DROP EXTENSION IF EXISTS "uuid-ossp"')
