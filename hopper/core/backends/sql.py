"""SQL constants for the Postgres backend."""

from __future__ import annotations

from sqlalchemy import text

# ---------- Schema ----------

SCHEMA_ADVISORY_LOCK_SQL = text("""
    SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))
""")

HEALTH_CHECK_SQL = text('SELECT 1')


# ---------- Transitions ----------
# RECEIVED is the only insert: redeliveries and retries land on the same row.

UPSERT_RECEIVED_SQL = text("""
    INSERT INTO hopper_task_states (
        id, task_name, state, body, retry_count, max_retry, received_at, updated_at
    )
    VALUES (
        :id, :task_name, 'RECEIVED', :body, :retry_count, :max_retry, now(), now()
    )
    ON CONFLICT (id) DO UPDATE
    SET state = 'RECEIVED',
        retry_count = EXCLUDED.retry_count,
        max_retry = EXCLUDED.max_retry,
        updated_at = now()
""")

MARK_STARTED_SQL = text("""
    UPDATE hopper_task_states
    SET state = 'STARTED',
        retry_count = :retry_count,
        started_at = now(),
        updated_at = now()
    WHERE id = :id
""")

MARK_SUCCEED_SQL = text("""
    UPDATE hopper_task_states
    SET state = 'SUCCEED',
        result = :result,
        error = NULL,
        finished_at = now(),
        updated_at = now()
    WHERE id = :id
""")

MARK_FAILED_SQL = text("""
    UPDATE hopper_task_states
    SET state = 'FAILED',
        error = :error,
        finished_at = now(),
        updated_at = now()
    WHERE id = :id
""")

MARK_RETRYING_SQL = text("""
    UPDATE hopper_task_states
    SET state = 'RETRYING',
        error = :error,
        updated_at = now()
    WHERE id = :id
""")
