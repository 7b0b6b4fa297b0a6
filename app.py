#!/usr/bin/env python3
"""
Conclusion Evaluation Labeler - A web service for human evaluation of generated conclusions.

Annotators read a reference conclusion and two candidate conclusions, score
each candidate on a 0-5 rubric, and complete a one-time background survey.
The evaluation task list is split into fixed-size blocks; each annotator works
through one block.

Features:
- Session-based authentication with one annotator profile per identity
- Background survey (expertise group) recorded once per annotator
- Block allocation that refills incomplete blocks before opening new ones
- Conditional block reservation keyed on the allocation epoch
- Append-only evaluation ledger, one record per (annotator, task)
- Progress view computed from the ledger so sessions resume where they left off
- Admin block overview and annotator directory
- SQLite persistence

Usage:
    cd conclusion-eval-labeler
    uvicorn app:app --reload --port 8000

Environment Variables:
    DB_PATH=evaluations.db  - SQLite database file
    TASKS_PATH=data/tasks.json  - Task catalog (flat list or trainingTasks/evaluationTasks split)
    BLOCK_SIZE=20  - Tasks per block (default: 20)
    BLOCK_COMPLETION_RULE=task_range  - How block completion is counted: task_range or cohort
    SESSION_EXPIRY_DAYS=30  - Session cookie lifetime
    ADMIN_EMAIL=someone@example.org  - Bootstrap admin user (gets admin role on startup/registration)
    LOG_LEVEL=INFO  - Server log level
"""

import hashlib
import logging
import os
import secrets
import sqlite3
import uuid
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Literal, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from evalblocks import (
    BLOCK_SIZE as DEFAULT_BLOCK_SIZE,
    AllocationSnapshot,
    BlockAllocator,
    CatalogExhausted,
    ConfigurationError,
    LabelerError,
    ProfileCreationConflict,
    ReservationConflict,
    TaskCatalog,
    TransientStoreError,
    block_capacity,
    catalog_to_dict,
    load_catalog,
)

# Paths - relative to this file's directory
APP_DIR = Path(__file__).parent.resolve()
DATA_DIR = APP_DIR / "data"
DB_PATH = Path(os.environ.get("DB_PATH", APP_DIR / "evaluations.db"))
TASKS_PATH = Path(os.environ.get("TASKS_PATH", DATA_DIR / "tasks.json"))

# Configuration
BLOCK_SIZE = int(os.environ.get("BLOCK_SIZE", str(DEFAULT_BLOCK_SIZE)))
BLOCK_COMPLETION_RULE = os.environ.get("BLOCK_COMPLETION_RULE", "task_range")
SESSION_EXPIRY_DAYS = int(os.environ.get("SESSION_EXPIRY_DAYS", "30"))
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "").strip().lower()  # Email to bootstrap as admin
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# Role constants
ROLE_ADMIN = "admin"
ROLE_ANNOTATOR = "annotator"

COMPLETION_RULES = ("task_range", "cohort")

# ============================================================================
# Logging
# ============================================================================

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

# Global catalog - loaded once per process
_catalog: Optional[TaskCatalog] = None

# ============================================================================
# API Documentation
# ============================================================================

API_DESCRIPTION = """
# Conclusion Evaluation Labeler API

Human evaluation of machine-generated conclusions against a reference conclusion.

## Workflow

1. Register or log in (`/api/auth/register`, `/api/auth/login`). A session cookie is set.
2. Answer the background survey (`/api/annotator/survey`).
3. Ask for a block (`/api/blocks/next`) and reserve it (`/api/blocks/reserve`).
4. Score each task of the block (`/api/evaluations`), following `/api/progress`.

## Blocks

The evaluation tasks are split into blocks of `BLOCK_SIZE` tasks (block *n* is
tasks `[n*BLOCK_SIZE, (n+1)*BLOCK_SIZE)`). The allocator hands out the
lowest-numbered incomplete block first, and opens a new block only when every
assigned block is complete. When no block is left, `/api/blocks/next` answers
400 with `nextBlockNumber: null`.

Deciding and reserving are separate calls. Pass the `epoch` returned by
`/api/blocks/next` as `expected_epoch` to `/api/blocks/reserve`: the reservation
is rejected with 409 if any other block reservation happened in between, and
the client should ask for a new decision.

## Scores

Each candidate is scored 0 (no similarity / contradictory) to 5 (semantically
equivalent). One evaluation per annotator and task.
"""

TAGS_METADATA = [
    {
        "name": "Authentication",
        "description": "User registration, login, logout, and session management.",
    },
    {
        "name": "Annotator",
        "description": "Annotator profile and background survey.",
    },
    {
        "name": "Tasks",
        "description": "The task catalog and per-block task slices.",
    },
    {
        "name": "Blocks",
        "description": "Block allocation and reservation.",
    },
    {
        "name": "Evaluation",
        "description": "Submit scores and follow progress through the assigned block.",
    },
    {
        "name": "Admin",
        "description": "Admin-only block overview and annotator directory. Requires admin role.",
    },
    {
        "name": "System",
        "description": "System information endpoints.",
    },
]

app = FastAPI(
    title="Conclusion Evaluation Labeler API",
    description=API_DESCRIPTION,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=TAGS_METADATA,
    license_info={
        "name": "MIT",
        "url": "https://opensource.org/licenses/MIT",
    },
)


# ============================================================================
# Task Catalog
# ============================================================================

def get_catalog() -> TaskCatalog:
    """Get the global task catalog, loading it on first use."""
    global _catalog
    if _catalog is None:
        if TASKS_PATH.exists():
            logger.info("Loading task catalog: %s", TASKS_PATH)
            _catalog = load_catalog(TASKS_PATH)
        else:
            logger.warning("Task catalog not found at %s, serving an empty catalog", TASKS_PATH)
            _catalog = TaskCatalog()
    return _catalog


def reset_catalog():
    """Drop the cached catalog so the next call reloads TASKS_PATH."""
    global _catalog
    _catalog = None


# ============================================================================
# Database Setup
# ============================================================================

def utc_timestamp(dt: Optional[datetime] = None) -> str:
    """Format a datetime the way SQLite's CURRENT_TIMESTAMP does (UTC)."""
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def init_db():
    """Initialize SQLite database."""
    with get_db() as conn:
        # Check if annotators table predates block_assigned_at
        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='annotators'"
        )
        annotators_exist = cursor.fetchone() is not None
        needs_assigned_at_migration = False
        if annotators_exist:
            columns = [row[1] for row in conn.execute("PRAGMA table_info(annotators)").fetchall()]
            needs_assigned_at_migration = 'block_assigned_at' not in columns

        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT,
                role TEXT NOT NULL DEFAULT 'annotator',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_seen TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                token TEXT UNIQUE NOT NULL,
                user_id TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                expires_at TIMESTAMP NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_token ON sessions(token);
            CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);

            -- Annotator directory: one profile per identity
            CREATE TABLE IF NOT EXISTS annotators (
                id TEXT PRIMARY KEY,
                email TEXT,
                expertise_group TEXT CHECK (expertise_group IN ('medical', 'general')),
                block_number INTEGER CHECK (block_number >= 0),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                block_assigned_at TIMESTAMP,
                FOREIGN KEY (id) REFERENCES users(id) ON DELETE CASCADE
            );

            -- Evaluation ledger: insert-only
            CREATE TABLE IF NOT EXISTS evaluations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                annotator_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                score_a INTEGER NOT NULL CHECK (score_a BETWEEN 0 AND 5),
                score_b INTEGER NOT NULL CHECK (score_b BETWEEN 0 AND 5),
                session_start_time TIMESTAMP,
                evaluation_end_time TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (annotator_id, task_id),
                FOREIGN KEY (annotator_id) REFERENCES annotators(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_evaluations_annotator ON evaluations(annotator_id);
            CREATE INDEX IF NOT EXISTS idx_evaluations_task ON evaluations(task_id);
        """)

        if needs_assigned_at_migration:
            migrate_add_block_assigned_at(conn)

        # Index used by the allocator's aggregate scan
        conn.execute("CREATE INDEX IF NOT EXISTS idx_annotators_block ON annotators(block_number)")

        if ADMIN_EMAIL:
            bootstrap_admin_user(conn)


def migrate_add_block_assigned_at(conn):
    """Add block_assigned_at to an existing annotators table."""
    logger.info("Adding block_assigned_at column to annotators table...")
    conn.execute("ALTER TABLE annotators ADD COLUMN block_assigned_at TIMESTAMP")
    logger.info("Migration complete. Existing block assignments keep a NULL assignment time.")


def bootstrap_admin_user(conn):
    """Grant admin role to the ADMIN_EMAIL user if it exists."""
    row = conn.execute(
        "SELECT id, role FROM users WHERE email = ?", (ADMIN_EMAIL,)
    ).fetchone()

    if row:
        if row["role"] != ROLE_ADMIN:
            conn.execute("UPDATE users SET role = ? WHERE id = ?", (ROLE_ADMIN, row["id"]))
            logger.info("User '%s' promoted to admin role.", ADMIN_EMAIL)
    else:
        logger.info("Admin user '%s' not found. Will be granted admin role on registration.", ADMIN_EMAIL)


@contextmanager
def get_db():
    """Database connection context manager."""
    conn = sqlite3.connect(DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


# ============================================================================
# Annotator Directory
# ============================================================================

def get_annotator(conn, annotator_id: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM annotators WHERE id = ?", (annotator_id,)
    ).fetchone()


def create_annotator_profile(conn, annotator_id: str, email: Optional[str]):
    """Insert a fresh profile. Raises ProfileCreationConflict if one exists."""
    try:
        conn.execute(
            "INSERT INTO annotators (id, email) VALUES (?, ?)",
            (annotator_id, email),
        )
    except sqlite3.IntegrityError as e:
        raise ProfileCreationConflict(annotator_id) from e
    logger.info("Created annotator profile for %s", email or annotator_id)


def ensure_annotator_profile(conn, user: dict) -> dict:
    """Fetch the caller's profile, creating it on first use."""
    row = get_annotator(conn, user["id"])
    if row is None:
        try:
            create_annotator_profile(conn, user["id"], user.get("email"))
        except ProfileCreationConflict:
            # Another request created it first
            logger.info("Profile for %s already exists, re-fetching", user["id"])
        row = get_annotator(conn, user["id"])
    return annotator_to_dict(row)


def annotator_to_dict(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "email": row["email"],
        "expertise_group": row["expertise_group"],
        "block_number": row["block_number"],
        "created_at": row["created_at"],
        "block_assigned_at": row["block_assigned_at"],
    }


# ============================================================================
# Block Allocation
# ============================================================================

class SqliteBlockRepository:
    """
    BlockRepository over the annotators and evaluations tables.

    Completion counting follows BLOCK_COMPLETION_RULE:
    - task_range: evaluations whose task id falls in the block's catalog slice.
      Unaffected by which annotators currently hold the block.
    - cohort: evaluations belonging to annotators currently stamped with the
      block number, whatever tasks they cover.
    """

    def __init__(self, connect, catalog: TaskCatalog, block_size: int, rule: str = "task_range"):
        if rule not in COMPLETION_RULES:
            raise ConfigurationError(f"Unknown block completion rule: {rule}")
        self._connect = connect
        self.catalog = catalog
        self.block_size = block_size
        self.rule = rule

    def snapshot(self) -> AllocationSnapshot:
        try:
            with self._connect() as conn:
                holders = self._holders(conn)
                if self.rule == "cohort":
                    counts = self._cohort_counts(conn)
                else:
                    counts = self._task_range_counts(conn)
        except sqlite3.Error as e:
            raise TransientStoreError(f"Failed to read allocation state: {e}") from e

        return AllocationSnapshot(
            assigned_blocks=frozenset(holders),
            completed_counts=counts,
            epoch=sum(holders.values()),
        )

    def holders(self) -> dict[int, int]:
        """Block number -> number of annotators stamped with it."""
        try:
            with self._connect() as conn:
                return self._holders(conn)
        except sqlite3.Error as e:
            raise TransientStoreError(f"Failed to read block holders: {e}") from e

    def _holders(self, conn) -> dict[int, int]:
        rows = conn.execute("""
            SELECT block_number, COUNT(*) AS holders
            FROM annotators
            WHERE block_number IS NOT NULL
            GROUP BY block_number
        """).fetchall()
        return {row["block_number"]: row["holders"] for row in rows}

    def _cohort_counts(self, conn) -> dict[int, int]:
        rows = conn.execute("""
            SELECT a.block_number, COUNT(e.id) AS completed
            FROM annotators a
            JOIN evaluations e ON e.annotator_id = a.id
            WHERE a.block_number IS NOT NULL
            GROUP BY a.block_number
        """).fetchall()
        return {row["block_number"]: row["completed"] for row in rows}

    def _task_range_counts(self, conn) -> dict[int, int]:
        counts: dict[int, int] = defaultdict(int)
        rows = conn.execute(
            "SELECT task_id, COUNT(*) AS n FROM evaluations GROUP BY task_id"
        ).fetchall()
        for row in rows:
            block = self.catalog.block_of(row["task_id"], self.block_size)
            if block is not None:
                counts[block] += row["n"]
        return dict(counts)

    def reserve(self, annotator_id: str, block_number: int,
                expected_epoch: Optional[int] = None) -> bool:
        # Single UPDATE so the epoch check and the write cannot interleave
        query = """
            UPDATE annotators SET block_number = ?, block_assigned_at = ?
            WHERE id = ? AND block_number IS NULL
        """
        params = [block_number, utc_timestamp(), annotator_id]
        if expected_epoch is not None:
            query += " AND (SELECT COUNT(*) FROM annotators WHERE block_number IS NOT NULL) = ?"
            params.append(expected_epoch)

        try:
            with self._connect() as conn:
                if conn.execute(query, params).rowcount:
                    return True
                row = get_annotator(conn, annotator_id)
                return row is not None and row["block_number"] == block_number
        except sqlite3.Error as e:
            raise TransientStoreError(f"Failed to write block assignment: {e}") from e


def get_block_repository() -> SqliteBlockRepository:
    return SqliteBlockRepository(get_db, get_catalog(), BLOCK_SIZE, BLOCK_COMPLETION_RULE)


def get_allocator() -> BlockAllocator:
    """Build an allocator over the current store and catalog."""
    return BlockAllocator(get_block_repository(), get_catalog().size, BLOCK_SIZE)


def compute_progress(conn, profile: dict, catalog: TaskCatalog) -> dict:
    """Progress of an annotator through their block, read fresh from the ledger."""
    block = profile["block_number"]
    if block is None:
        return {
            "block_number": None,
            "total": 0,
            "completed": 0,
            "remaining": 0,
            "next_task_id": None,
            "is_complete": False,
        }

    tasks = catalog.block_tasks(block, BLOCK_SIZE)
    done = {
        row["task_id"]
        for row in conn.execute(
            "SELECT task_id FROM evaluations WHERE annotator_id = ?", (profile["id"],)
        ).fetchall()
    }
    remaining = [task.id for task in tasks if task.id not in done]

    return {
        "block_number": block,
        "total": len(tasks),
        "completed": len(tasks) - len(remaining),
        "remaining": len(remaining),
        "next_task_id": remaining[0] if remaining else None,
        "is_complete": not remaining,
    }


# ============================================================================
# Authentication Helpers
# ============================================================================

def hash_password(password: str) -> str:
    """Hash a password using SHA-256 with salt."""
    salt = secrets.token_hex(16)
    hashed = hashlib.sha256((salt + password).encode()).hexdigest()
    return f"{salt}:{hashed}"


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash."""
    if not password_hash or ':' not in password_hash:
        return False
    salt, hashed = password_hash.split(':', 1)
    return secrets.compare_digest(hashlib.sha256((salt + password).encode()).hexdigest(), hashed)


def create_session(user_id: str) -> str:
    """Create a new session for a user."""
    token = secrets.token_urlsafe(32)
    expires_at = datetime.now(timezone.utc) + timedelta(days=SESSION_EXPIRY_DAYS)

    with get_db() as conn:
        conn.execute("""
            INSERT INTO sessions (token, user_id, expires_at)
            VALUES (?, ?, ?)
        """, (token, user_id, utc_timestamp(expires_at)))

        conn.execute("""
            UPDATE users SET last_seen = CURRENT_TIMESTAMP WHERE id = ?
        """, (user_id,))

    return token


def get_user_from_session(token: Optional[str]) -> Optional[dict]:
    """Get user from session token."""
    if not token:
        return None

    with get_db() as conn:
        row = conn.execute("""
            SELECT u.id, u.email, u.role, u.created_at
            FROM sessions s
            JOIN users u ON s.user_id = u.id
            WHERE s.token = ? AND s.expires_at > CURRENT_TIMESTAMP
        """, (token,)).fetchone()

        if row:
            conn.execute("""
                UPDATE users SET last_seen = CURRENT_TIMESTAMP WHERE id = ?
            """, (row["id"],))

            return {
                "id": row["id"],
                "email": row["email"],
                "role": row["role"],
                "created_at": row["created_at"]
            }

    return None


def delete_session(token: str):
    """Delete a session."""
    with get_db() as conn:
        conn.execute("DELETE FROM sessions WHERE token = ?", (token,))


def set_session_cookie(response: Response, token: str):
    response.set_cookie(
        key="session",
        value=token,
        httponly=True,
        max_age=SESSION_EXPIRY_DAYS * 24 * 60 * 60,
        samesite="lax"
    )


async def get_current_user(request: Request) -> dict:
    """Dependency to get current user from session cookie."""
    token = request.cookies.get("session")
    user = get_user_from_session(token)
    if not user:
        raise HTTPException(401, "Not authenticated. Please log in.")
    return user


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    """Dependency to require admin role."""
    if user.get("role") != ROLE_ADMIN:
        raise HTTPException(403, "Admin access required.")
    return user


# ============================================================================
# Pydantic Models
# ============================================================================

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+$"


class UserCreate(BaseModel):
    """Request body for user registration."""
    email: str = Field(..., pattern=EMAIL_PATTERN, description="Email address", examples=["annotator@example.org"])
    password: str = Field(..., min_length=6, description="Password (min 6 characters)")


class UserLogin(BaseModel):
    """Request body for user login."""
    email: str = Field(..., description="Email address")
    password: str = Field(..., description="Password")


class UserResponse(BaseModel):
    """Response containing user information."""
    id: str = Field(..., description="User ID")
    email: str = Field(..., description="Email address")
    role: str = Field(ROLE_ANNOTATOR, description="User role (admin or annotator)")


class AnnotatorResponse(BaseModel):
    """An annotator profile."""
    id: str
    email: Optional[str] = None
    expertise_group: Optional[str] = Field(None, description="medical or general, null until the survey is answered")
    block_number: Optional[int] = Field(None, description="Assigned block, null until reserved")
    created_at: Optional[str] = None
    block_assigned_at: Optional[str] = None


class SurveySubmission(BaseModel):
    """Background survey answer."""
    expertise_group: Literal["medical", "general"] = Field(
        ..., description="Professional or academic background"
    )


class BlockReservation(BaseModel):
    """Request body for reserving a decided block."""
    block_number: int = Field(..., ge=0, description="Block returned by /api/blocks/next")
    expected_epoch: Optional[int] = Field(
        None, ge=0,
        description="Epoch returned with the decision. Omit for an unconditional write-back.",
    )


class EvaluationSubmission(BaseModel):
    """Scores for one task of the assigned block."""
    task_id: Union[str, int] = Field(..., description="Task identifier")
    score_a: int = Field(..., ge=0, le=5, description="Score for candidate A (0-5)")
    score_b: int = Field(..., ge=0, le=5, description="Score for candidate B (0-5)")
    session_start_time: Optional[datetime] = Field(None, description="When the annotator opened the task")
    evaluation_end_time: Optional[datetime] = Field(None, description="When the annotator submitted")


# ============================================================================
# Error Handlers
# ============================================================================

@app.exception_handler(CatalogExhausted)
async def catalog_exhausted_handler(request: Request, exc: CatalogExhausted):
    return JSONResponse(
        status_code=400,
        content={"error": str(exc), "nextBlockNumber": None},
    )


ERROR_TEXT_BY_PATH = {
    "/api/blocks/next": "Failed to get next block number",
    "/api/blocks/reserve": "Failed to reserve block",
    "/api/admin/blocks": "Failed to read block assignments",
}


def internal_error_text(path: str) -> str:
    return ERROR_TEXT_BY_PATH.get(path, "Internal server error")


@app.exception_handler(TransientStoreError)
async def transient_store_error_handler(request: Request, exc: TransientStoreError):
    logger.error("Store failure on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"error": internal_error_text(request.url.path), "message": str(exc)},
    )


@app.exception_handler(LabelerError)
async def labeler_error_handler(request: Request, exc: LabelerError):
    """Any other domain failure, such as an unreadable catalog or a bad setting."""
    logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"error": internal_error_text(request.url.path), "message": str(exc)},
    )


# ============================================================================
# API Endpoints - Root
# ============================================================================

@app.on_event("startup")
async def startup():
    """Initialize database and catalog on startup."""
    init_db()
    catalog = get_catalog()
    logger.info(
        "Serving %d evaluation tasks in %d blocks of %d (completion rule: %s)",
        catalog.size, catalog.block_count(BLOCK_SIZE), BLOCK_SIZE, BLOCK_COMPLETION_RULE,
    )


# ============================================================================
# API Endpoints - Authentication
# ============================================================================

@app.post(
    "/api/auth/register",
    tags=["Authentication"],
    summary="Register a new user",
    description="Create a new user account and its annotator profile. Returns a session cookie on success. If ADMIN_EMAIL matches, the user gets admin role.",
)
async def register(user: UserCreate, response: Response):
    """Register a new user."""
    email = user.email.strip().lower()

    with get_db() as conn:
        existing = conn.execute(
            "SELECT id FROM users WHERE email = ?",
            (email,)
        ).fetchone()

        if existing:
            raise HTTPException(400, "Email already registered")

        role = ROLE_ADMIN if email == ADMIN_EMAIL else ROLE_ANNOTATOR

        user_id = str(uuid.uuid4())
        conn.execute("""
            INSERT INTO users (id, email, password_hash, role)
            VALUES (?, ?, ?, ?)
        """, (user_id, email, hash_password(user.password), role))

        create_annotator_profile(conn, user_id, email)

    token = create_session(user_id)
    set_session_cookie(response, token)

    return {"id": user_id, "email": email, "role": role}


@app.post(
    "/api/auth/login",
    tags=["Authentication"],
    summary="Log in",
    description="Authenticate with email and password. Returns a session cookie on success.",
)
async def login(user: UserLogin, response: Response):
    """Log in a user."""
    email = user.email.strip().lower()

    with get_db() as conn:
        row = conn.execute(
            "SELECT id, password_hash, role FROM users WHERE email = ?",
            (email,)
        ).fetchone()

        if not row or not verify_password(user.password, row["password_hash"]):
            raise HTTPException(401, "Invalid email or password")

        user_id = row["id"]
        role = row["role"]

    token = create_session(user_id)
    set_session_cookie(response, token)

    return {"status": "logged_in", "user_id": user_id, "email": email, "role": role}


@app.post(
    "/api/auth/logout",
    tags=["Authentication"],
    summary="Log out",
    description="Invalidate the current session and clear the session cookie.",
)
async def logout(request: Request, response: Response):
    """Log out the current user."""
    token = request.cookies.get("session")
    if token:
        delete_session(token)
    response.delete_cookie("session")
    return {"status": "logged_out"}


@app.get(
    "/api/me",
    tags=["Authentication"],
    summary="Get current user",
    response_model=UserResponse,
)
async def get_me(user: dict = Depends(get_current_user)):
    """Get current user info."""
    return UserResponse(id=user["id"], email=user["email"], role=user.get("role", ROLE_ANNOTATOR))


@app.get(
    "/api/auth/status",
    tags=["Authentication"],
    summary="Get auth status",
)
async def auth_status():
    """Get authentication mode."""
    return {
        "registration_enabled": True,
        "admin_bootstrap_configured": bool(ADMIN_EMAIL),
    }


# ============================================================================
# API Endpoints - Annotator
# ============================================================================

@app.get(
    "/api/annotator",
    tags=["Annotator"],
    summary="Get my annotator profile",
    description="Get the caller's annotator profile, creating it if this identity has none yet.",
    response_model=AnnotatorResponse,
)
async def get_my_profile(user: dict = Depends(get_current_user)):
    with get_db() as conn:
        return AnnotatorResponse(**ensure_annotator_profile(conn, user))


@app.put(
    "/api/annotator/survey",
    tags=["Annotator"],
    summary="Submit background survey",
    description="Record the caller's expertise group. Set once; resubmitting the same answer is a no-op, a different answer is rejected with 409.",
    response_model=AnnotatorResponse,
)
async def submit_survey(survey: SurveySubmission, user: dict = Depends(get_current_user)):
    with get_db() as conn:
        profile = ensure_annotator_profile(conn, user)

        current = profile["expertise_group"]
        if current is not None and current != survey.expertise_group:
            raise HTTPException(409, f"Background survey already answered: {current}")

        if current is None:
            conn.execute(
                "UPDATE annotators SET expertise_group = ? WHERE id = ?",
                (survey.expertise_group, user["id"]),
            )
            logger.info("Annotator %s recorded expertise group %s", user["id"], survey.expertise_group)
            profile["expertise_group"] = survey.expertise_group

        return AnnotatorResponse(**profile)


# ============================================================================
# API Endpoints - Tasks
# ============================================================================

@app.get(
    "/api/tasks",
    tags=["Tasks"],
    summary="Get task catalog",
    description="The normalized task catalog: training tasks and ordered evaluation tasks.",
)
async def get_tasks():
    catalog = get_catalog()
    data = catalog_to_dict(catalog)
    data["blockSize"] = BLOCK_SIZE
    data["blockCount"] = catalog.block_count(BLOCK_SIZE)
    return data


@app.get(
    "/api/blocks/{block_number}/tasks",
    tags=["Tasks"],
    summary="Get the tasks of a block",
)
async def get_block_tasks(block_number: int, user: dict = Depends(get_current_user)):
    catalog = get_catalog()
    if block_number < 0 or block_number >= catalog.block_count(BLOCK_SIZE):
        raise HTTPException(404, f"Block not found: {block_number}")

    tasks = catalog.block_tasks(block_number, BLOCK_SIZE)
    return {
        "block_number": block_number,
        "tasks": [task.model_dump() for task in tasks],
        "total": len(tasks),
    }


# ============================================================================
# API Endpoints - Blocks
# ============================================================================

@app.get(
    "/api/blocks/next",
    tags=["Blocks"],
    summary="Decide the next block",
    description="""Compute which block the caller should work on. Nothing is written.

**Policy:**
1. The lowest-numbered assigned block that is still incomplete (`isReassignment: true`)
2. Otherwise one past the highest block ever assigned (block 0 when none is)

`totalIncompleteBlocks` counts assigned blocks with at least one evaluation but
fewer than their capacity. A held block with no evaluations is still reassigned
but not counted.

Returns 400 with `nextBlockNumber: null` when the catalog has no block left.
The returned `epoch` should be passed to `/api/blocks/reserve`.
""",
)
async def get_next_block(user: dict = Depends(get_current_user)):
    assignment = get_allocator().decide()
    logger.info("Decided block %d for %s", assignment.next_block_number, user["id"])
    return assignment.to_response()


@app.post(
    "/api/blocks/reserve",
    tags=["Blocks"],
    summary="Reserve a block",
    description="""Write a decided block number onto the caller's profile.

With `expected_epoch` the write is rejected (409) if another annotator reserved
a block since the decision was made; ask `/api/blocks/next` again. Without it
the write-back is unconditional. Reserving the block already held is a no-op;
a caller already holding a different block gets 409.
""",
)
async def reserve_block(reservation: BlockReservation, user: dict = Depends(get_current_user)):
    with get_db() as conn:
        profile = ensure_annotator_profile(conn, user)

    held = profile["block_number"]
    if held is not None:
        if held != reservation.block_number:
            raise HTTPException(409, f"Annotator already assigned to block {held}")
        return {"status": "already_reserved", "block_number": held, "annotator": profile}

    try:
        get_allocator().reserve(user["id"], reservation.block_number, reservation.expected_epoch)
    except ReservationConflict:
        raise HTTPException(
            409,
            f"Block {reservation.block_number} reservation conflicted with a concurrent "
            "assignment. Request a new block decision.",
        )

    with get_db() as conn:
        profile = annotator_to_dict(get_annotator(conn, user["id"]))

    return {"status": "reserved", "block_number": profile["block_number"], "annotator": profile}


# ============================================================================
# API Endpoints - Evaluation
# ============================================================================

@app.post(
    "/api/evaluations",
    tags=["Evaluation"],
    summary="Submit an evaluation",
    description="Record scores for one task of the caller's block. One evaluation per task; resubmission is rejected with 409.",
)
async def submit_evaluation(submission: EvaluationSubmission, user: dict = Depends(get_current_user)):
    catalog = get_catalog()
    task_id = str(submission.task_id)
    task_block = catalog.block_of(task_id, BLOCK_SIZE)
    if task_block is None:
        raise HTTPException(404, f"Task not found: {task_id}")

    with get_db() as conn:
        profile = ensure_annotator_profile(conn, user)
        if profile["block_number"] is None:
            raise HTTPException(400, "No block assigned. Reserve a block before submitting evaluations.")
        if task_block != profile["block_number"]:
            raise HTTPException(
                400, f"Task {task_id} is not in your assigned block {profile['block_number']}"
            )

        end_time = submission.evaluation_end_time or datetime.now(timezone.utc)
        start_time = submission.session_start_time or end_time

        try:
            cursor = conn.execute("""
                INSERT INTO evaluations
                (annotator_id, task_id, score_a, score_b, session_start_time, evaluation_end_time)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                user["id"],
                task_id,
                submission.score_a,
                submission.score_b,
                utc_timestamp(start_time),
                utc_timestamp(end_time),
            ))
        except sqlite3.IntegrityError:
            raise HTTPException(409, f"Task {task_id} already evaluated")

        evaluation_id = cursor.lastrowid
        progress = compute_progress(conn, profile, catalog)

    logger.info(
        "Annotator %s scored task %s (%d/%d in block %d)",
        user["id"], task_id, progress["completed"], progress["total"], progress["block_number"],
    )
    return {
        "status": "saved",
        "evaluation_id": evaluation_id,
        "task_id": task_id,
        "annotator_id": user["id"],
        "progress": progress,
    }


@app.get(
    "/api/evaluations",
    tags=["Evaluation"],
    summary="List my evaluations",
)
async def list_my_evaluations(user: dict = Depends(get_current_user)):
    with get_db() as conn:
        rows = conn.execute("""
            SELECT id, task_id, score_a, score_b, session_start_time, evaluation_end_time, created_at
            FROM evaluations
            WHERE annotator_id = ?
            ORDER BY id
        """, (user["id"],)).fetchall()

    return {"evaluations": [dict(row) for row in rows], "total": len(rows)}


@app.get(
    "/api/progress",
    tags=["Evaluation"],
    summary="Get progress through my block",
    description="Counts the caller's evaluations against the tasks of their block and names the next task without an evaluation.",
)
async def get_progress(user: dict = Depends(get_current_user)):
    with get_db() as conn:
        profile = ensure_annotator_profile(conn, user)
        return compute_progress(conn, profile, get_catalog())


# ============================================================================
# API Endpoints - Admin
# ============================================================================

@app.get(
    "/api/admin/blocks",
    tags=["Admin"],
    summary="Block overview (admin)",
    description="Per-block holders, completed count and capacity, plus the decision the allocator would make now. Admin only.",
)
async def admin_block_overview(admin: dict = Depends(require_admin)):
    catalog = get_catalog()
    repository = get_block_repository()
    snapshot = repository.snapshot()
    holders = repository.holders()

    blocks = []
    for block_number in sorted(snapshot.assigned_blocks):
        capacity = block_capacity(block_number, catalog.size, BLOCK_SIZE)
        completed = snapshot.completed_counts.get(block_number, 0)
        blocks.append({
            "block_number": block_number,
            "holders": holders.get(block_number, 0),
            "completed": completed,
            "capacity": capacity,
            "status": "complete" if completed >= capacity else "incomplete",
        })

    try:
        next_block = get_allocator().decide().to_response()
    except CatalogExhausted:
        next_block = None

    return {
        "block_size": BLOCK_SIZE,
        "completion_rule": BLOCK_COMPLETION_RULE,
        "catalog_size": catalog.size,
        "block_count": catalog.block_count(BLOCK_SIZE),
        "epoch": snapshot.epoch,
        "blocks": blocks,
        "next": next_block,
    }


@app.get(
    "/api/admin/annotators",
    tags=["Admin"],
    summary="List annotators (admin)",
    description="Annotator directory with evaluation counts. Admin only.",
)
async def admin_list_annotators(admin: dict = Depends(require_admin)):
    with get_db() as conn:
        rows = conn.execute("""
            SELECT a.id, a.email, a.expertise_group, a.block_number, a.created_at,
                   a.block_assigned_at, u.role, COUNT(e.id) AS evaluations
            FROM annotators a
            JOIN users u ON u.id = a.id
            LEFT JOIN evaluations e ON e.annotator_id = a.id
            GROUP BY a.id
            ORDER BY a.created_at, a.id
        """).fetchall()

    return {
        "annotators": [dict(row) for row in rows],
        "total": len(rows),
    }


# ============================================================================
# API Endpoints - System
# ============================================================================

@app.get(
    "/api/health",
    tags=["System"],
    summary="Health check",
)
async def health():
    catalog = get_catalog()
    return {
        "status": "ok",
        "catalog_size": catalog.size,
        "training_tasks": len(catalog.training_tasks),
        "block_size": BLOCK_SIZE,
    }
