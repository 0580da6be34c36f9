# model/schema.py
"""
DDL for the ticket store. Portable between PostgreSQL and SQLite (>= 3.35 for
RETURNING). Every invariant that can be a table constraint is one, so a bug
in a service cannot persist a ticket that is used-but-unpaid or a template
whose counters do not add up.
"""

from __future__ import annotations
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession


SQL_CREATE_EVENTS = r"""
CREATE TABLE IF NOT EXISTS events (
    id              TEXT PRIMARY KEY,
    organizer_id    TEXT NOT NULL,
    organizer_tier  TEXT NOT NULL DEFAULT 'free',
    name            TEXT NOT NULL,
    starts_at       DOUBLE PRECISION NOT NULL,
    ends_at         DOUBLE PRECISION NOT NULL,
    attendee_count  INTEGER NOT NULL DEFAULT 0,
    disputed        BOOLEAN NOT NULL DEFAULT FALSE,
    created_at      DOUBLE PRECISION NOT NULL,
    CHECK (ends_at >= starts_at)
);
"""

SQL_CREATE_TEMPLATES = r"""
-- inventory per ticket type:
--   available : can be reserved right now
--   held      : reserved, waiting for the processor's verdict
--   sold      : paid
CREATE TABLE IF NOT EXISTS ticket_templates (
    id                  TEXT PRIMARY KEY,
    event_id            TEXT NOT NULL REFERENCES events(id),
    name                TEXT NOT NULL,
    type                TEXT NOT NULL CHECK (type IN (
                            'general', 'vip', 'early_bird', 'day_pass',
                            'multi_day', 'backstage', 'student', 'group')),
    price               INTEGER NOT NULL CHECK (price >= 0),
    currency            TEXT NOT NULL DEFAULT 'eur',
    quantity_total      INTEGER NOT NULL CHECK (quantity_total >= 0),
    quantity_available  INTEGER NOT NULL CHECK (quantity_available >= 0),
    quantity_held       INTEGER NOT NULL DEFAULT 0 CHECK (quantity_held >= 0),
    quantity_sold       INTEGER NOT NULL DEFAULT 0 CHECK (quantity_sold >= 0),
    is_active           BOOLEAN NOT NULL DEFAULT TRUE,
    sale_start          DOUBLE PRECISION,
    sale_end            DOUBLE PRECISION,
    created_at          DOUBLE PRECISION NOT NULL,
    CHECK (quantity_available + quantity_held + quantity_sold
           = quantity_total)
);
"""

SQL_CREATE_TICKETS = r"""
CREATE TABLE IF NOT EXISTS tickets (
    id                    TEXT PRIMARY KEY,
    event_id              TEXT NOT NULL REFERENCES events(id),
    template_id           TEXT NOT NULL REFERENCES ticket_templates(id),
    buyer_id              TEXT NOT NULL,
    holder_name           TEXT NOT NULL,
    holder_email          TEXT NOT NULL,
    price_paid            INTEGER NOT NULL,
    currency              TEXT NOT NULL,
    payment_status        TEXT NOT NULL CHECK (payment_status IN (
                              'pending', 'paid', 'failed')),
    status                TEXT NOT NULL CHECK (status IN (
                              'valid', 'used', 'cancelled', 'refunded',
                              'expired')),
    code                  TEXT UNIQUE,
    checkout_session_ref  TEXT NOT NULL UNIQUE,
    payment_reference     TEXT,
    created_at            DOUBLE PRECISION NOT NULL,
    paid_at               DOUBLE PRECISION,
    used_at               DOUBLE PRECISION,
    verified_by           TEXT,
    refunded_at           DOUBLE PRECISION,
    CHECK (status <> 'used' OR payment_status = 'paid'),
    CHECK (code IS NULL OR payment_status = 'paid')
);
"""

# one open checkout per buyer and event: the reconciler's fallback match on
# (buyer, event, pending) can never pick the wrong reservation
SQL_CREATE_TICKETS_ONE_PENDING_IDX = r"""
CREATE UNIQUE INDEX IF NOT EXISTS tickets_one_pending_per_buyer_event
    ON tickets (buyer_id, event_id)
    WHERE payment_status = 'pending';
"""

SQL_CREATE_TICKETS_PENDING_AGE_IDX = r"""
CREATE INDEX IF NOT EXISTS tickets_payment_status_created_idx
    ON tickets (payment_status, created_at);
"""

SQL_CREATE_TICKETS_EVENT_IDX = r"""
CREATE INDEX IF NOT EXISTS tickets_event_payment_status_idx
    ON tickets (event_id, payment_status);
"""

SQL_CREATE_TICKETS_BUYER_IDX = r"""
CREATE INDEX IF NOT EXISTS tickets_buyer_created_at_idx
    ON tickets (buyer_id, created_at);
"""

SQL_CREATE_PAYOUTS = r"""
CREATE TABLE IF NOT EXISTS payouts (
    id                 TEXT PRIMARY KEY,
    organizer_id       TEXT NOT NULL,
    event_id           TEXT NOT NULL UNIQUE REFERENCES events(id),
    gross_amount       INTEGER NOT NULL DEFAULT 0,
    platform_fee       INTEGER NOT NULL DEFAULT 0,
    amount             INTEGER NOT NULL DEFAULT 0,
    ticket_count       INTEGER NOT NULL DEFAULT 0,
    currency           TEXT NOT NULL DEFAULT 'eur',
    status             TEXT NOT NULL CHECK (status IN (
                           'pending', 'released', 'failed')),
    hold_until         DOUBLE PRECISION NOT NULL,
    release_reference  TEXT,
    review_reason      TEXT,
    claim_token        TEXT,
    claimed_at         DOUBLE PRECISION,
    error_message      TEXT,
    created_at         DOUBLE PRECISION NOT NULL,
    updated_at         DOUBLE PRECISION NOT NULL,
    released_at        DOUBLE PRECISION
);
"""

SQL_CREATE_PAYOUTS_DUE_IDX = r"""
CREATE INDEX IF NOT EXISTS payouts_status_hold_until_idx
    ON payouts (status, hold_until);
"""

SQL_CREATE_REFUNDS = r"""
CREATE TABLE IF NOT EXISTS refunds (
    id                TEXT PRIMARY KEY,
    ticket_id         TEXT NOT NULL UNIQUE REFERENCES tickets(id),
    buyer_id          TEXT NOT NULL,
    event_id          TEXT NOT NULL,
    original_amount   INTEGER NOT NULL,
    refund_amount     INTEGER NOT NULL,
    refund_percent    INTEGER NOT NULL,
    status            TEXT NOT NULL CHECK (status IN ('pending', 'processed')),
    reason            TEXT NOT NULL,
    refund_reference  TEXT,
    created_at        DOUBLE PRECISION NOT NULL,
    processed_at      DOUBLE PRECISION
);
"""

SQL_CREATE_ORPHANS = r"""
-- payment notifications nobody could match; operators work these by hand
CREATE TABLE IF NOT EXISTS reconciliation_orphans (
    id           TEXT PRIMARY KEY,
    kind         TEXT NOT NULL,
    session_ref  TEXT,
    buyer_id     TEXT,
    event_id     TEXT,
    reason       TEXT NOT NULL,
    payload      TEXT NOT NULL,
    created_at   DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_VERIFICATIONS = r"""
CREATE TABLE IF NOT EXISTS ticket_verifications (
    id           TEXT PRIMARY KEY,
    ticket_id    TEXT,
    event_id     TEXT NOT NULL,
    verifier_id  TEXT NOT NULL,
    result       TEXT NOT NULL,
    created_at   DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_WEBHOOK_EVENTS_SEEN = r"""
CREATE TABLE IF NOT EXISTS webhook_events_seen (
    idempotency_key  TEXT PRIMARY KEY,
    created_at       DOUBLE PRECISION NOT NULL
);
"""

ALL_DDL = (
    SQL_CREATE_EVENTS,
    SQL_CREATE_TEMPLATES,
    SQL_CREATE_TICKETS,
    SQL_CREATE_TICKETS_ONE_PENDING_IDX,
    SQL_CREATE_TICKETS_PENDING_AGE_IDX,
    SQL_CREATE_TICKETS_EVENT_IDX,
    SQL_CREATE_TICKETS_BUYER_IDX,
    SQL_CREATE_PAYOUTS,
    SQL_CREATE_PAYOUTS_DUE_IDX,
    SQL_CREATE_REFUNDS,
    SQL_CREATE_ORPHANS,
    SQL_CREATE_VERIFICATIONS,
    SQL_CREATE_WEBHOOK_EVENTS_SEEN,
)


async def create_schema(db_or_conn: AsyncSession | AsyncConnection) -> None:
    # get an execute handle that works for both session and connection
    exec_ = db_or_conn.execute
    for ddl in ALL_DDL:
        await exec_(text(ddl))
