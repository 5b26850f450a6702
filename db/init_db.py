"""
db/init_db.py
-------------
Creates the database schema (tables) if they do not already exist.
Run this module directly to initialize a fresh database:
    python -m db.init_db
"""

from db.connection import get_connection, release_connection
from utils.logger import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
-- Users: account owners and their chat-handle quota
CREATE TABLE IF NOT EXISTS users (
    id              SERIAL PRIMARY KEY,
    username        VARCHAR(100) UNIQUE NOT NULL,
    role            VARCHAR(10) NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
    max_handles     INT NOT NULL DEFAULT 1 CHECK (max_handles >= 0),
    created_at      TIMESTAMPTZ DEFAULT NOW()
);

-- Registered chat handles; a handle belongs to exactly one user
CREATE TABLE IF NOT EXISTS user_chat_handles (
    id              SERIAL PRIMARY KEY,
    user_id         INT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    handle          VARCHAR(15) UNIQUE NOT NULL,
    is_active       BOOLEAN NOT NULL DEFAULT TRUE,
    last_active     TIMESTAMPTZ DEFAULT NOW()
);

-- Chat sessions: one per (user, handle)
CREATE TABLE IF NOT EXISTS chat_sessions (
    id              SERIAL PRIMARY KEY,
    user_id         INT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    handle          VARCHAR(15) NOT NULL,
    status          VARCHAR(10) NOT NULL DEFAULT 'inactive'
                    CHECK (status IN ('inactive', 'pending', 'active', 'expired')),
    last_active     TIMESTAMPTZ DEFAULT NOW(),
    pairing_artifact TEXT,
    channel_id      VARCHAR(64),
    settings        JSONB NOT NULL DEFAULT '{}'::jsonb,
    nlp_settings    JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at      TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE (user_id, handle)
);

-- Outbound messages waiting for delivery on a session
CREATE TABLE IF NOT EXISTS session_message_queue (
    id              SERIAL PRIMARY KEY,
    session_id      INT NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
    content         TEXT NOT NULL,
    kind            VARCHAR(20) NOT NULL DEFAULT 'text',
    priority        INT NOT NULL DEFAULT 1,
    scheduled_for   TIMESTAMPTZ,
    status          VARCHAR(10) NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'sent', 'failed')),
    created_at      TIMESTAMPTZ DEFAULT NOW()
);

-- Append-only session error log
CREATE TABLE IF NOT EXISTS session_error_logs (
    id              SERIAL PRIMARY KEY,
    session_id      INT NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
    logged_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    error           TEXT NOT NULL,
    context         JSONB NOT NULL DEFAULT '{}'::jsonb
);

-- Ledger: every income/expense entry, amounts in minor units
CREATE TABLE IF NOT EXISTS transactions (
    id              SERIAL PRIMARY KEY,
    user_id         INT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    type            VARCHAR(10) NOT NULL CHECK (type IN ('expense', 'income')),
    amount          BIGINT NOT NULL CHECK (amount >= 0),
    currency        VARCHAR(5) NOT NULL DEFAULT 'IDR',
    category        VARCHAR(50) NOT NULL,
    description     TEXT,
    date            DATE NOT NULL DEFAULT CURRENT_DATE,
    source          VARCHAR(10) NOT NULL CHECK (source IN ('web', 'chat')),
    chat_handle     VARCHAR(15),
    status          VARCHAR(10) NOT NULL DEFAULT 'completed'
                    CHECK (status IN ('pending', 'completed', 'cancelled')),
    tags            TEXT[] NOT NULL DEFAULT '{}',
    attachments     JSONB NOT NULL DEFAULT '[]'::jsonb,
    latitude        DOUBLE PRECISION,
    longitude       DOUBLE PRECISION,
    recurrence      JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at      TIMESTAMPTZ DEFAULT NOW(),
    updated_at      TIMESTAMPTZ DEFAULT NOW()
);

-- Budgets: windowed spending plans
CREATE TABLE IF NOT EXISTS budgets (
    id              SERIAL PRIMARY KEY,
    user_id         INT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    name            VARCHAR(100) NOT NULL,
    period          VARCHAR(10) NOT NULL
                    CHECK (period IN ('daily', 'weekly', 'monthly', 'yearly', 'custom')),
    start_date      TIMESTAMPTZ NOT NULL,
    end_date        TIMESTAMPTZ NOT NULL,
    total_budget    BIGINT NOT NULL CHECK (total_budget >= 0),
    total_spent     BIGINT NOT NULL DEFAULT 0,
    status          VARCHAR(10) NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active', 'completed', 'cancelled')),
    notifications   JSONB NOT NULL DEFAULT '{}'::jsonb,
    is_recurring    BOOLEAN NOT NULL DEFAULT FALSE,
    recurring       JSONB,
    notes           TEXT,
    created_at      TIMESTAMPTZ DEFAULT NOW(),
    updated_at      TIMESTAMPTZ DEFAULT NOW()
);

-- Budget category lines; spent moves only through atomic increments
CREATE TABLE IF NOT EXISTS budget_categories (
    id              SERIAL PRIMARY KEY,
    budget_id       INT NOT NULL REFERENCES budgets(id) ON DELETE CASCADE,
    position        INT NOT NULL DEFAULT 0,
    name            VARCHAR(50) NOT NULL,
    limit_amount    BIGINT NOT NULL CHECK (limit_amount >= 0),
    spent           BIGINT NOT NULL DEFAULT 0,
    color           VARCHAR(9) NOT NULL DEFAULT '#000000',
    notify_enabled  BOOLEAN NOT NULL DEFAULT TRUE,
    notify_threshold NUMERIC(5,2) NOT NULL DEFAULT 80
                    CHECK (notify_threshold BETWEEN 0 AND 100),
    UNIQUE (budget_id, name)
);

-- Indexes for faster queries
CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions(user_id, date);
CREATE INDEX IF NOT EXISTS idx_transactions_user_category ON transactions(user_id, category);
CREATE INDEX IF NOT EXISTS idx_transactions_user_type ON transactions(user_id, type);
CREATE INDEX IF NOT EXISTS idx_budgets_user_status ON budgets(user_id, status);
CREATE INDEX IF NOT EXISTS idx_budgets_user_start ON budgets(user_id, start_date DESC);
CREATE INDEX IF NOT EXISTS idx_sessions_status ON chat_sessions(status, last_active DESC);
CREATE INDEX IF NOT EXISTS idx_queue_pending ON session_message_queue(session_id, priority DESC)
    WHERE status = 'pending';
"""


def create_tables() -> None:
    """
    Execute the schema SQL to create all tables.
    Safe to call multiple times (uses IF NOT EXISTS).
    """
    conn = get_connection()
    try:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()
        logger.info("Database schema initialized successfully.")
    except Exception as e:
        conn.rollback()
        logger.error(f"Failed to initialize schema: {e}")
        raise
    finally:
        release_connection(conn)


if __name__ == "__main__":
    from db.connection import init_pool
    init_pool()
    create_tables()
    print("Database schema created successfully.")
