"""
Database module for the Review Report Worker.
Implements SQLite persistence with async support.

Tables:
    jobs              - queued review report jobs
    accounts          - identities leased least-recently-used first
    proxy_configs     - egress proxies with a rotating session counter
    automation_logs   - append-only audit records
    browser_sessions  - saved cookies per account identity
"""

import os
import json
import uuid
import aiosqlite
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any
from pathlib import Path
from contextlib import asynccontextmanager

from core.models import ALLOWED_TRANSITIONS, JobStatus

# Database configuration
DB_PATH = Path(os.getenv("DATABASE_PATH", Path(__file__).parent.parent / "data" / "review_reporter.db"))
DB_PATH.parent.mkdir(parents=True, exist_ok=True)

BROWSER_SESSION_TTL_DAYS = 30


async def init_database():
    """Initialize the database schema."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                target_reference TEXT NOT NULL,
                action_parameter TEXT,
                label TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                assigned_account_id TEXT,
                error_message TEXT,
                method TEXT,
                confidence TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                updated_at TEXT,
                completed_at TEXT
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                id TEXT PRIMARY KEY,
                identity TEXT UNIQUE NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                access_token TEXT,
                last_used_at TEXT,
                created_at TEXT NOT NULL
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS proxy_configs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                address TEXT NOT NULL,
                port INTEGER NOT NULL,
                protocol TEXT DEFAULT 'http',
                username TEXT,
                password TEXT,
                session_counter INTEGER DEFAULT 0,
                max_sessions INTEGER DEFAULT 10000,
                rotation_enabled BOOLEAN DEFAULT 1,
                priority INTEGER DEFAULT 0,
                is_active BOOLEAN DEFAULT 1,
                location TEXT,
                last_session_at TEXT,
                created_at TEXT NOT NULL
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS automation_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                account_id TEXT,
                proxy_ref TEXT,
                direct_connection BOOLEAN DEFAULT 0,
                status TEXT NOT NULL,
                method TEXT,
                confidence TEXT,
                error_message TEXT,
                screenshot_url TEXT,
                started_at TEXT,
                completed_at TEXT,
                created_at TEXT NOT NULL
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS browser_sessions (
                identity TEXT PRIMARY KEY,
                cookies_json TEXT,
                user_agent TEXT,
                last_used_at TEXT,
                expires_at TEXT,
                is_valid BOOLEAN DEFAULT 1
            )
        """)

        # Create indexes
        await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_accounts_status_used ON accounts(status, last_used_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_logs_job_id ON automation_logs(job_id)")

        await db.commit()

        # Lightweight migrations for additive columns.
        await _migrate_jobs(db)
        await db.commit()


async def _migrate_jobs(db: aiosqlite.Connection):
    """Add optional job columns if an older database is missing them."""
    cursor = await db.execute("PRAGMA table_info(jobs)")
    rows = await cursor.fetchall()
    existing = {row[1] for row in rows}  # (cid, name, type, notnull, dflt, pk)

    migrations = [
        ("label", "TEXT"),
        ("method", "TEXT"),
        ("confidence", "TEXT"),
        ("started_at", "TEXT"),
        ("updated_at", "TEXT"),
    ]

    for col, col_type in migrations:
        if col in existing:
            continue
        await db.execute(f"ALTER TABLE jobs ADD COLUMN {col} {col_type}")


@asynccontextmanager
async def get_db():
    """Get a database connection."""
    db = await aiosqlite.connect(DB_PATH)
    db.row_factory = aiosqlite.Row
    try:
        yield db
    finally:
        await db.close()


def _ts(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


# Job operations

async def enqueue_job(
    target_reference: str,
    action_parameter: Optional[str] = None,
    label: Optional[str] = None,
    job_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Insert a new pending job and return it."""
    job_id = job_id or str(uuid.uuid4())
    now = datetime.now().isoformat()
    async with get_db() as db:
        await db.execute(
            """INSERT INTO jobs (id, target_reference, action_parameter, label, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, 'pending', ?, ?)""",
            (job_id, target_reference, action_parameter, label, now, now),
        )
        await db.commit()
    return await get_job(job_id)


async def get_job(job_id: str) -> Optional[Dict[str, Any]]:
    """Get job by ID."""
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None


async def list_jobs(status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    """List jobs, newest first."""
    async with get_db() as db:
        if status:
            cursor = await db.execute(
                "SELECT * FROM jobs WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                (status, limit),
            )
        else:
            cursor = await db.execute(
                "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


async def get_job_counts() -> Dict[str, int]:
    """Count jobs per status."""
    async with get_db() as db:
        cursor = await db.execute("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status")
        rows = await cursor.fetchall()
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = int(row["n"])
        return counts


async def claim_next_job() -> Optional[Dict[str, Any]]:
    """
    Atomically claim the oldest pending job (pending -> in_progress).
    Returns the claimed job dict, or None. Nothing is claimed while another
    job is still in progress.
    """
    now = datetime.now().isoformat()
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")

        cursor = await db.execute("SELECT id FROM jobs WHERE status = 'in_progress' LIMIT 1")
        busy = await cursor.fetchone()
        if busy:
            await db.execute("COMMIT")
            return None

        cursor = await db.execute(
            """
            SELECT * FROM jobs
            WHERE status = 'pending'
            ORDER BY created_at ASC, rowid ASC
            LIMIT 1
            """
        )
        row = await cursor.fetchone()
        if not row:
            await db.execute("COMMIT")
            return None

        job_id = row["id"]
        await db.execute(
            """UPDATE jobs SET status = 'in_progress', started_at = ?, updated_at = ?
               WHERE id = ? AND status = 'pending'""",
            (now, now, job_id),
        )
        await db.commit()

        job = dict(row)
        job.update(status=JobStatus.IN_PROGRESS.value, started_at=now, updated_at=now)
        return job


async def update_job_status(
    job_id: str,
    status: str,
    *,
    error_message: Optional[str] = None,
    assigned_account_id: Optional[str] = None,
    method: Optional[str] = None,
    confidence: Optional[str] = None,
) -> bool:
    """
    Move a job to ``status``.

    Only forward transitions are applied; the WHERE clause rejects writes to
    rows already in a terminal state. Returns True if the row changed.
    """
    target = JobStatus(status)
    allowed_from = [s.value for s, targets in ALLOWED_TRANSITIONS.items() if target in targets]
    if not allowed_from:
        return False

    now = datetime.now().isoformat()
    completed_at = now if target.is_terminal else None
    placeholders = ",".join("?" for _ in allowed_from)

    async with get_db() as db:
        cursor = await db.execute(
            f"""UPDATE jobs
                SET status = ?,
                    error_message = COALESCE(?, error_message),
                    assigned_account_id = COALESCE(?, assigned_account_id),
                    method = COALESCE(?, method),
                    confidence = COALESCE(?, confidence),
                    completed_at = COALESCE(?, completed_at),
                    updated_at = ?
                WHERE id = ? AND status IN ({placeholders})""",
            (target.value, error_message, assigned_account_id, method, confidence,
             completed_at, now, job_id, *allowed_from),
        )
        await db.commit()
        return cursor.rowcount > 0


async def assign_job_account(job_id: str, account_id: str) -> bool:
    """Record the account working an in-progress job."""
    async with get_db() as db:
        cursor = await db.execute(
            """UPDATE jobs SET assigned_account_id = ?, updated_at = ?
               WHERE id = ? AND status = 'in_progress'""",
            (account_id, datetime.now().isoformat(), job_id),
        )
        await db.commit()
        return cursor.rowcount > 0


async def recover_abandoned_jobs(reason: str = "Abandoned: worker restarted") -> int:
    """Fail jobs left in_progress by a previous process."""
    now = datetime.now().isoformat()
    async with get_db() as db:
        cursor = await db.execute(
            """UPDATE jobs
               SET status = 'failed', error_message = ?, completed_at = ?, updated_at = ?
               WHERE status = 'in_progress'""",
            (reason, now, now),
        )
        await db.commit()
        return cursor.rowcount


# Account operations

async def add_account(
    identity: str,
    access_token: Optional[str] = None,
    status: str = "active",
    account_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Create an account. Returns None if the identity already exists."""
    account_id = account_id or str(uuid.uuid4())
    async with get_db() as db:
        try:
            await db.execute(
                """INSERT INTO accounts (id, identity, status, access_token, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (account_id, identity, status, access_token, datetime.now().isoformat()),
            )
            await db.commit()
        except aiosqlite.IntegrityError:
            return None
    return await get_account_by_identity(identity)


async def get_account_by_identity(identity: str) -> Optional[Dict[str, Any]]:
    """Get account by identity (email)."""
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM accounts WHERE identity = ?", (identity,))
        row = await cursor.fetchone()
        return dict(row) if row else None


async def get_least_recently_used_account() -> Optional[Dict[str, Any]]:
    """Active account with the oldest last_used_at; never-used accounts first."""
    async with get_db() as db:
        cursor = await db.execute(
            """
            SELECT * FROM accounts
            WHERE status = 'active'
            ORDER BY last_used_at IS NOT NULL, last_used_at ASC, created_at ASC
            LIMIT 1
            """
        )
        row = await cursor.fetchone()
        return dict(row) if row else None


async def touch_account(account_id: str, used_at: Optional[datetime] = None):
    """Record that an account was used."""
    used_at = (used_at or datetime.now()).isoformat()
    async with get_db() as db:
        await db.execute(
            "UPDATE accounts SET last_used_at = ? WHERE id = ?", (used_at, account_id)
        )
        await db.commit()


async def set_account_status(account_id: str, status: str):
    async with get_db() as db:
        await db.execute("UPDATE accounts SET status = ? WHERE id = ?", (status, account_id))
        await db.commit()


# Proxy operations

async def add_proxy_endpoint(
    address: str,
    port: int,
    protocol: str = "http",
    username: Optional[str] = None,
    password: Optional[str] = None,
    *,
    max_sessions: int = 10000,
    rotation_enabled: bool = True,
    priority: int = 0,
    location: Optional[str] = None,
    session_counter: int = 0,
    is_active: bool = True,
) -> int:
    """Register a proxy endpoint and return its id."""
    async with get_db() as db:
        cursor = await db.execute(
            """INSERT INTO proxy_configs
               (address, port, protocol, username, password, session_counter, max_sessions,
                rotation_enabled, priority, is_active, location, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (address, int(port), protocol, username, password, int(session_counter),
             int(max_sessions), int(rotation_enabled), int(priority), int(is_active),
             location, datetime.now().isoformat()),
        )
        await db.commit()
        return cursor.lastrowid


async def get_proxy_endpoint(proxy_id: int) -> Optional[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM proxy_configs WHERE id = ?", (proxy_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None


async def lease_proxy_endpoint() -> Optional[Dict[str, Any]]:
    """
    Atomically pick the highest-priority active proxy and advance its session counter.

    The counter wraps to 1 once it has reached max_sessions. The read and the
    increment share one write transaction so two leases never see the same value.
    """
    now = datetime.now().isoformat()
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")

        cursor = await db.execute(
            """
            SELECT * FROM proxy_configs
            WHERE is_active = 1
            ORDER BY priority DESC, id ASC
            LIMIT 1
            """
        )
        row = await cursor.fetchone()
        if not row:
            await db.execute("COMMIT")
            return None

        counter = int(row["session_counter"] or 0)
        max_sessions = int(row["max_sessions"] or 10000)
        next_counter = 1 if counter >= max_sessions else counter + 1

        await db.execute(
            "UPDATE proxy_configs SET session_counter = ?, last_session_at = ? WHERE id = ?",
            (next_counter, now, row["id"]),
        )
        await db.commit()

        proxy = dict(row)
        proxy.update(session_counter=next_counter, last_session_at=now)
        return proxy


# Audit operations

async def insert_audit_record(
    job_id: str,
    status: str,
    *,
    account_id: Optional[str] = None,
    proxy_identifier: Optional[str] = None,
    direct_connection: bool = False,
    method: Optional[str] = None,
    confidence: Optional[str] = None,
    error_message: Optional[str] = None,
    screenshot_url: Optional[str] = None,
    started_at: Any = None,
    completed_at: Any = None,
) -> int:
    """Append an audit record."""
    async with get_db() as db:
        cursor = await db.execute(
            """INSERT INTO automation_logs
               (job_id, account_id, proxy_ref, direct_connection, status, method, confidence,
                error_message, screenshot_url, started_at, completed_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (job_id, account_id, proxy_identifier, int(direct_connection), status, method,
             confidence, error_message, screenshot_url, _ts(started_at), _ts(completed_at),
             datetime.now().isoformat()),
        )
        await db.commit()
        return cursor.lastrowid


async def attach_screenshot_to_latest_audit(job_id: str, screenshot_url: str) -> bool:
    """Set screenshot_url on the most recent audit record for a job."""
    async with get_db() as db:
        cursor = await db.execute(
            """UPDATE automation_logs SET screenshot_url = ?
               WHERE id = (SELECT id FROM automation_logs WHERE job_id = ? ORDER BY id DESC LIMIT 1)""",
            (screenshot_url, job_id),
        )
        await db.commit()
        return cursor.rowcount > 0


async def list_audit_records(job_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    """List audit records, oldest first."""
    async with get_db() as db:
        if job_id:
            cursor = await db.execute(
                "SELECT * FROM automation_logs WHERE job_id = ? ORDER BY id ASC LIMIT ?",
                (job_id, limit),
            )
        else:
            cursor = await db.execute(
                "SELECT * FROM automation_logs ORDER BY id ASC LIMIT ?", (limit,)
            )
        rows = await cursor.fetchall()
        items = []
        for row in rows:
            item = dict(row)
            item["direct_connection"] = bool(item.get("direct_connection"))
            items.append(item)
        return items


# Browser session operations

async def save_browser_session(
    identity: str,
    cookies: List[Dict[str, Any]],
    user_agent: Optional[str] = None,
    ttl_days: int = BROWSER_SESSION_TTL_DAYS,
):
    """Save (or replace) the cookies for an account identity."""
    now = datetime.now()
    async with get_db() as db:
        await db.execute(
            """INSERT OR REPLACE INTO browser_sessions
               (identity, cookies_json, user_agent, last_used_at, expires_at, is_valid)
               VALUES (?, ?, ?, ?, ?, 1)""",
            (identity, json.dumps(cookies), user_agent, now.isoformat(),
             (now + timedelta(days=ttl_days)).isoformat()),
        )
        await db.commit()


async def load_browser_session(identity: str) -> Optional[Dict[str, Any]]:
    """Load a valid, unexpired browser session; expired sessions are invalidated."""
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT * FROM browser_sessions WHERE identity = ? AND is_valid = 1", (identity,)
        )
        row = await cursor.fetchone()
    if not row:
        return None

    session = dict(row)
    expires_at = session.get("expires_at")
    if expires_at and datetime.fromisoformat(expires_at) < datetime.now():
        await invalidate_browser_session(identity)
        return None

    session["cookies"] = json.loads(session.get("cookies_json") or "[]")
    return session


async def invalidate_browser_session(identity: str):
    async with get_db() as db:
        await db.execute(
            "UPDATE browser_sessions SET is_valid = 0 WHERE identity = ?", (identity,)
        )
        await db.commit()
