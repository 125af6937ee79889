import json
import sqlite3
import uuid
from datetime import datetime

from .models import ScheduledEvent, UserPreferences


def get_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db(db_path: str) -> None:
    conn = get_connection(db_path)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS user_preferences (
            user_id TEXT PRIMARY KEY,
            email TEXT NOT NULL,
            categories TEXT NOT NULL DEFAULT '[]',
            frequency TEXT NOT NULL DEFAULT 'weekly',
            is_active INTEGER DEFAULT 1,
            created_at TEXT NOT NULL
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS scheduled_events (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            user_id TEXT NOT NULL,
            payload TEXT NOT NULL,
            run_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            attempts INTEGER DEFAULT 0,
            error_message TEXT DEFAULT '',
            created_at TEXT NOT NULL,
            finished_at TEXT
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_events_due ON scheduled_events (status, run_at)"
    )
    conn.execute("""
        CREATE TABLE IF NOT EXISTS job_runs (
            id TEXT PRIMARY KEY,
            event_id TEXT,
            user_id TEXT NOT NULL,
            state TEXT NOT NULL DEFAULT 'running',
            started_at TEXT NOT NULL,
            finished_at TEXT,
            duration_seconds REAL,
            article_count INTEGER DEFAULT 0,
            email_sent INTEGER DEFAULT 0,
            next_scheduled INTEGER DEFAULT 0,
            next_run_at TEXT,
            error_message TEXT DEFAULT ''
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS email_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_run_id TEXT,
            recipient TEXT NOT NULL,
            status TEXT NOT NULL,
            error_message TEXT DEFAULT '',
            created_at TEXT NOT NULL
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS api_usage (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_run_id TEXT,
            model TEXT NOT NULL,
            input_tokens INTEGER NOT NULL,
            output_tokens INTEGER NOT NULL,
            estimated_cost_usd REAL NOT NULL,
            step TEXT DEFAULT '',
            created_at TEXT NOT NULL
        )
    """)
    conn.commit()
    conn.close()


# ---------------------------------------------------------------------------
# User preferences
# ---------------------------------------------------------------------------

def save_preferences(db_path: str, prefs: UserPreferences) -> None:
    """Insert or update a user's preferences. Keeps the original created_at."""
    conn = get_connection(db_path)
    try:
        conn.execute(
            """INSERT INTO user_preferences
               (user_id, email, categories, frequency, is_active, created_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(user_id) DO UPDATE SET
                   email = excluded.email,
                   categories = excluded.categories,
                   frequency = excluded.frequency,
                   is_active = excluded.is_active""",
            (
                prefs.user_id,
                prefs.email,
                json.dumps(prefs.categories),
                prefs.frequency,
                int(prefs.is_active),
                prefs.created_at.isoformat(),
            ),
        )
        conn.commit()
    finally:
        conn.close()


def get_preferences(db_path: str, user_id: str) -> UserPreferences | None:
    conn = get_connection(db_path)
    row = conn.execute(
        """SELECT user_id, email, categories, frequency, is_active, created_at
           FROM user_preferences WHERE user_id = ?""",
        (user_id,),
    ).fetchone()
    conn.close()
    if row is None:
        return None
    return _row_to_preferences(row)


def set_preferences_active(db_path: str, user_id: str, active: bool) -> bool:
    """Flip the active flag. Returns True if the user exists."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            "UPDATE user_preferences SET is_active = ? WHERE user_id = ?",
            (int(active), user_id),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Scheduled events
# ---------------------------------------------------------------------------

def insert_event(
    db_path: str,
    name: str,
    user_id: str,
    payload: dict,
    run_at: datetime,
    event_id: str = "",
) -> str | None:
    """Queue an event. Returns its id, or None if a live event with that id exists.

    A cancelled or failed row with the same id is reset to pending with the
    new payload and fire time.
    """
    event_id = event_id or uuid.uuid4().hex[:12]
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """INSERT INTO scheduled_events
               (id, name, user_id, payload, run_at, status, created_at)
               VALUES (?, ?, ?, ?, ?, 'pending', ?)
               ON CONFLICT(id) DO UPDATE SET
                   status = 'pending',
                   payload = excluded.payload,
                   run_at = excluded.run_at,
                   attempts = 0,
                   error_message = '',
                   created_at = excluded.created_at,
                   finished_at = NULL
               WHERE scheduled_events.status IN ('cancelled', 'failed')""",
            (
                event_id,
                name,
                user_id,
                json.dumps(payload),
                run_at.isoformat(),
                datetime.utcnow().isoformat(),
            ),
        )
        conn.commit()
        return event_id if cursor.rowcount > 0 else None
    finally:
        conn.close()


def get_due_events(db_path: str, now: datetime, limit: int = 50) -> list[ScheduledEvent]:
    """Pending events whose fire time has passed, oldest first."""
    conn = get_connection(db_path)
    rows = conn.execute(
        """SELECT * FROM scheduled_events
           WHERE status = 'pending' AND run_at <= ?
           ORDER BY run_at ASC
           LIMIT ?""",
        (now.isoformat(), limit),
    ).fetchall()
    conn.close()
    return [_row_to_event(r) for r in rows]


def claim_event(db_path: str, event_id: str) -> bool:
    """Move an event from pending to running. Only one caller can win."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """UPDATE scheduled_events
               SET status = 'running', attempts = attempts + 1
               WHERE id = ? AND status = 'pending'""",
            (event_id,),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def finish_event(db_path: str, event_id: str, status: str, error_message: str = "") -> None:
    """Close a running event. A cancellation that landed meanwhile is kept."""
    conn = get_connection(db_path)
    conn.execute(
        """UPDATE scheduled_events
           SET status = ?, error_message = ?, finished_at = ?
           WHERE id = ? AND status = 'running'""",
        (status, error_message, datetime.utcnow().isoformat(), event_id),
    )
    conn.commit()
    conn.close()


def requeue_event(db_path: str, event_id: str, run_at: datetime, error_message: str = "") -> bool:
    """Put a running event back to pending for a later attempt."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """UPDATE scheduled_events
               SET status = 'pending', run_at = ?, error_message = ?
               WHERE id = ? AND status = 'running'""",
            (run_at.isoformat(), error_message, event_id),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def get_event(db_path: str, event_id: str) -> ScheduledEvent | None:
    conn = get_connection(db_path)
    row = conn.execute(
        "SELECT * FROM scheduled_events WHERE id = ?", (event_id,)
    ).fetchone()
    conn.close()
    if row is None:
        return None
    return _row_to_event(row)


def get_event_status(db_path: str, event_id: str) -> str | None:
    conn = get_connection(db_path)
    row = conn.execute(
        "SELECT status FROM scheduled_events WHERE id = ?", (event_id,)
    ).fetchone()
    conn.close()
    if row is None:
        return None
    return row["status"]


def cancel_event(db_path: str, event_id: str) -> bool:
    """Cancel one pending event."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """UPDATE scheduled_events
               SET status = 'cancelled', finished_at = ?
               WHERE id = ? AND status = 'pending'""",
            (datetime.utcnow().isoformat(), event_id),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def cancel_user_events(db_path: str, name: str, user_id: str) -> int:
    """Cancel pending and running events of one user. Returns count."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """UPDATE scheduled_events
               SET status = 'cancelled', finished_at = ?
               WHERE name = ? AND user_id = ? AND status IN ('pending', 'running')""",
            (datetime.utcnow().isoformat(), name, user_id),
        )
        conn.commit()
        return cursor.rowcount
    finally:
        conn.close()


def get_user_events(db_path: str, user_id: str, status: str | None = None) -> list[ScheduledEvent]:
    conn = get_connection(db_path)
    if status is None:
        rows = conn.execute(
            "SELECT * FROM scheduled_events WHERE user_id = ? ORDER BY run_at ASC",
            (user_id,),
        ).fetchall()
    else:
        rows = conn.execute(
            """SELECT * FROM scheduled_events
               WHERE user_id = ? AND status = ? ORDER BY run_at ASC""",
            (user_id, status),
        ).fetchall()
    conn.close()
    return [_row_to_event(r) for r in rows]


# ---------------------------------------------------------------------------
# Job run tracking
# ---------------------------------------------------------------------------

def create_job_run(db_path: str, user_id: str, event_id: str = "") -> str:
    """Create a new job run record. Returns the run id."""
    run_id = uuid.uuid4().hex[:12]
    conn = get_connection(db_path)
    conn.execute(
        """INSERT INTO job_runs (id, event_id, user_id, state, started_at)
           VALUES (?, ?, ?, 'running', ?)""",
        (run_id, event_id, user_id, datetime.utcnow().isoformat()),
    )
    conn.commit()
    conn.close()
    return run_id


def update_job_run(db_path: str, run_id: str, **kwargs) -> None:
    """Update fields on a job run. Accepts any column name as kwarg."""
    if not kwargs:
        return
    sets = ", ".join(f"{k} = ?" for k in kwargs)
    vals = list(kwargs.values())
    vals.append(run_id)
    conn = get_connection(db_path)
    conn.execute(f"UPDATE job_runs SET {sets} WHERE id = ?", vals)
    conn.commit()
    conn.close()


def get_job_runs(db_path: str, user_id: str | None = None, limit: int = 20) -> list[dict]:
    conn = get_connection(db_path)
    if user_id is None:
        rows = conn.execute(
            "SELECT * FROM job_runs ORDER BY started_at DESC LIMIT ?", (limit,)
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM job_runs WHERE user_id = ? ORDER BY started_at DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
    conn.close()
    return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# API usage / cost tracking
# ---------------------------------------------------------------------------

MODEL_PRICING = {
    # (input $/M tokens, output $/M tokens)
    "claude-sonnet-4-5-20250929": (3.00, 15.00),
    "claude-opus-4-6": (15.00, 75.00),
    "claude-haiku-4-5-20251001": (0.25, 1.25),
}


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimate USD cost for a Claude API call."""
    for key, (inp_price, out_price) in MODEL_PRICING.items():
        if key in model:
            return (input_tokens * inp_price + output_tokens * out_price) / 1_000_000
    # Fallback to Sonnet pricing
    return (input_tokens * 3.00 + output_tokens * 15.00) / 1_000_000


def log_api_usage(
    db_path: str,
    *,
    job_run_id: str = "",
    model: str,
    input_tokens: int,
    output_tokens: int,
    step: str = "",
) -> None:
    cost = estimate_cost(model, input_tokens, output_tokens)
    conn = get_connection(db_path)
    conn.execute(
        """INSERT INTO api_usage
           (job_run_id, model, input_tokens, output_tokens, estimated_cost_usd, step, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (job_run_id, model, input_tokens, output_tokens, cost, step, datetime.utcnow().isoformat()),
    )
    conn.commit()
    conn.close()


def log_email_send(
    db_path: str,
    *,
    job_run_id: str = "",
    recipient: str,
    status: str,
    error_message: str = "",
) -> None:
    conn = get_connection(db_path)
    conn.execute(
        """INSERT INTO email_log
           (job_run_id, recipient, status, error_message, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (job_run_id, recipient, status, error_message, datetime.utcnow().isoformat()),
    )
    conn.commit()
    conn.close()


def get_email_log(db_path: str, limit: int = 20) -> list[dict]:
    conn = get_connection(db_path)
    rows = conn.execute(
        """SELECT job_run_id, recipient, status, error_message, created_at
           FROM email_log ORDER BY id DESC LIMIT ?""",
        (limit,),
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]


def _row_to_preferences(row: sqlite3.Row) -> UserPreferences:
    d = dict(row)
    return UserPreferences(
        user_id=d["user_id"],
        email=d["email"],
        categories=d["categories"],
        frequency=d["frequency"],
        is_active=bool(d["is_active"]),
        created_at=datetime.fromisoformat(d["created_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> ScheduledEvent:
    d = dict(row)
    return ScheduledEvent(
        id=d["id"],
        name=d["name"],
        user_id=d["user_id"],
        payload=json.loads(d["payload"]),
        run_at=datetime.fromisoformat(d["run_at"]),
        status=d["status"],
        attempts=d["attempts"] or 0,
        error_message=d["error_message"] or "",
    )
