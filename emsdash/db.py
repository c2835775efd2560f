"""Database connection, schema bootstrap and default seed data.

SQLite is the default backend. When ``EMSDASH_DB_URL`` points at PostgreSQL the
same sqlite-style calls run through :class:`PostgresCompatConnection`, so the
service modules never branch on the backend.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Tuple

from emsdash import config
from emsdash.auth import hash_password
from emsdash.errors import NotFoundError
from emsdash.utils import iso, slugify

try:
    import psycopg
    from psycopg.rows import dict_row
except ImportError:  # pragma: no cover - optional dependency path
    psycopg = None
    dict_row = None

logger = logging.getLogger(__name__)

BOOTSTRAPPED = False
BOOTSTRAP_LOCK = threading.Lock()


class CompatRow(dict):
    """Row mapping that also supports numeric index access like sqlite3.Row."""

    def __init__(self, data: Dict[str, Any], order: List[str]):
        super().__init__(data)
        self._order = order

    def __getitem__(self, key: object) -> Any:  # type: ignore[override]
        if isinstance(key, int):
            return super().__getitem__(self._order[key])
        return super().__getitem__(str(key))


class CompatCursor:
    """Cursor wrapper with sqlite-like row behavior for PostgreSQL."""

    def __init__(self, cursor: Any, order: Optional[List[str]] = None, lastrowid: Optional[int] = None):
        self._cursor = cursor
        self._order = order or []
        self.lastrowid = lastrowid

    @property
    def rowcount(self) -> int:
        return int(getattr(self._cursor, "rowcount", -1))

    def _wrap(self, row):
        if isinstance(row, dict):
            return CompatRow(row, self._order)
        if isinstance(row, tuple):
            return CompatRow({name: row[idx] for idx, name in enumerate(self._order[: len(row)])}, self._order)
        return row

    def fetchone(self):
        if self._cursor.description is None:
            return None
        row = self._cursor.fetchone()
        return None if row is None else self._wrap(row)

    def fetchall(self):
        if self._cursor.description is None:
            return []
        return [self._wrap(row) for row in self._cursor.fetchall()]


def _split_sql_script(script: str) -> List[str]:
    chunks = []
    buf: List[str] = []
    in_single = False
    for ch in script:
        if ch == "'":
            in_single = not in_single
        if ch == ";" and not in_single:
            stmt = "".join(buf).strip()
            if stmt:
                chunks.append(stmt)
            buf = []
        else:
            buf.append(ch)
    tail = "".join(buf).strip()
    if tail:
        chunks.append(tail)
    return chunks


def _replace_qmark_params(sql: str) -> str:
    out: List[str] = []
    in_single = False
    for ch in sql:
        if ch == "'":
            in_single = not in_single
        if ch == "?" and not in_single:
            out.append("%s")
        else:
            out.append(ch)
    return "".join(out)


def _adapt_sql_for_postgres(sql: str) -> str:
    text = sql.strip()
    text = re.sub(r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT", "BIGSERIAL PRIMARY KEY", text, flags=re.IGNORECASE)
    if re.match(r"^INSERT\s+OR\s+IGNORE\s+INTO", text, flags=re.IGNORECASE):
        text = re.sub(r"^INSERT\s+OR\s+IGNORE\s+INTO", "INSERT INTO", text, flags=re.IGNORECASE)
        text = f"{text} ON CONFLICT DO NOTHING"
    return _replace_qmark_params(text)


class PostgresCompatConnection:
    """Small DB-API compatibility layer so sqlite-style calls run on PostgreSQL."""

    def __init__(self, conn: Any):
        self._conn = conn

    def execute(self, sql: str, params: Tuple[Any, ...] = ()):
        pg_sql = _adapt_sql_for_postgres(sql)
        cur = self._conn.cursor()
        try:
            cur.execute(pg_sql, tuple(params))
        except Exception as exc:
            # Integrity violations surface as sqlite3.IntegrityError so one handler covers both backends.
            if str(getattr(exc, "sqlstate", "") or "").startswith("23"):
                self._conn.rollback()
                raise sqlite3.IntegrityError(str(exc)) from exc
            raise
        order = [d.name for d in (cur.description or [])]
        last_id = None
        if pg_sql.upper().startswith("INSERT") and cur.rowcount > 0:
            with self._conn.cursor() as id_cur:
                id_cur.execute("SELECT LASTVAL() AS id")
                row = id_cur.fetchone()
                if row:
                    last_id = int(row["id"] if isinstance(row, dict) else row[0])
        return CompatCursor(cur, order=order, lastrowid=last_id)

    def executescript(self, script: str):
        for stmt in _split_sql_script(script):
            self.execute(stmt)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def db_connect():
    if config.DB_BACKEND == "postgres":
        if psycopg is None:
            raise RuntimeError("PostgreSQL backend requested but psycopg is not installed.")
        raw = psycopg.connect(config.DATABASE_URL, row_factory=dict_row, autocommit=False)
        return PostgresCompatConnection(raw)

    db_path = config.DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=config.DB_BUSY_TIMEOUT_MS / 1000.0)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {config.DB_BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys = ON")
    journal_mode = config.DB_JOURNAL_MODE
    if journal_mode not in {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}:
        journal_mode = "WAL"
    conn.execute(f"PRAGMA journal_mode = {journal_mode}")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


SCHEMA = """
CREATE TABLE IF NOT EXISTS organizations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    is_active INTEGER NOT NULL DEFAULT 1,
    is_superuser INTEGER NOT NULL DEFAULT 0,
    session_version INTEGER NOT NULL DEFAULT 1,
    employee_id TEXT,
    badge_number TEXT,
    phone TEXT,
    division_id INTEGER,
    trainee_status TEXT,
    hire_date TEXT,
    start_date TEXT,
    completion_date TEXT,
    notes TEXT,
    last_login_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS memberships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, organization_id)
);

CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    token_hash TEXT NOT NULL UNIQUE,
    csrf_token TEXT NOT NULL,
    session_version INTEGER NOT NULL DEFAULT 1,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    ip_address TEXT,
    user_agent TEXT
);

CREATE TABLE IF NOT EXISTS login_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    identifier TEXT NOT NULL,
    success INTEGER NOT NULL DEFAULT 0,
    reason TEXT,
    ip_address TEXT,
    user_agent TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER,
    user_id INTEGER,
    action TEXT NOT NULL,
    entity TEXT,
    entity_id TEXT,
    details TEXT,
    changes TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS departments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    department_type TEXT NOT NULL DEFAULT 'quality',
    description TEXT,
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (organization_id, slug)
);

CREATE TABLE IF NOT EXISTS divisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    department_id INTEGER NOT NULL REFERENCES departments(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (organization_id, slug)
);

CREATE TABLE IF NOT EXISTS regions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    division_id INTEGER NOT NULL REFERENCES divisions(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    role TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (division_id, name)
);

CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    color TEXT NOT NULL DEFAULT '#4b5563',
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    UNIQUE (organization_id, slug)
);

CREATE TABLE IF NOT EXISTS metric_definitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    department_id INTEGER NOT NULL REFERENCES departments(id) ON DELETE CASCADE,
    parent_id INTEGER REFERENCES metric_definitions(id) ON DELETE SET NULL,
    category_id INTEGER REFERENCES categories(id) ON DELETE SET NULL,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    description TEXT,
    data_definition TEXT,
    methodology TEXT,
    unit TEXT NOT NULL DEFAULT 'count',
    chart_type TEXT NOT NULL DEFAULT 'line',
    period_type TEXT NOT NULL DEFAULT 'monthly',
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_kpi INTEGER NOT NULL DEFAULT 0,
    target REAL,
    aggregation_type TEXT NOT NULL DEFAULT 'average',
    data_type TEXT NOT NULL DEFAULT 'continuous',
    desired_direction TEXT NOT NULL DEFAULT 'up',
    spc_sigma_level INTEGER NOT NULL DEFAULT 3,
    baseline_start TEXT,
    baseline_end TEXT,
    numerator_label TEXT,
    denominator_label TEXT,
    rate_multiplier REAL,
    rate_suffix TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (department_id, slug)
);

CREATE TABLE IF NOT EXISTS metric_associations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    metric_id INTEGER NOT NULL REFERENCES metric_definitions(id) ON DELETE CASCADE,
    division_id INTEGER NOT NULL REFERENCES divisions(id) ON DELETE CASCADE,
    region_id INTEGER REFERENCES regions(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metric_annotations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    metric_id INTEGER NOT NULL REFERENCES metric_definitions(id) ON DELETE CASCADE,
    annotation_date TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    annotation_type TEXT NOT NULL DEFAULT 'intervention',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metric_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    metric_id INTEGER NOT NULL REFERENCES metric_definitions(id) ON DELETE CASCADE,
    department_id INTEGER NOT NULL REFERENCES departments(id) ON DELETE CASCADE,
    division_id INTEGER REFERENCES divisions(id) ON DELETE SET NULL,
    region_id INTEGER REFERENCES regions(id) ON DELETE SET NULL,
    period_type TEXT NOT NULL DEFAULT 'monthly',
    period_start TEXT NOT NULL,
    value REAL NOT NULL,
    numerator REAL,
    denominator REAL,
    notes TEXT,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scorecards (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    description TEXT,
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (organization_id, slug)
);

CREATE TABLE IF NOT EXISTS scorecard_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scorecard_id INTEGER NOT NULL REFERENCES scorecards(id) ON DELETE CASCADE,
    metric_id INTEGER NOT NULL REFERENCES metric_definitions(id) ON DELETE CASCADE,
    sort_order INTEGER NOT NULL DEFAULT 0,
    group_name TEXT,
    UNIQUE (scorecard_id, metric_id)
);

CREATE TABLE IF NOT EXISTS scorecard_divisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scorecard_id INTEGER NOT NULL REFERENCES scorecards(id) ON DELETE CASCADE,
    division_id INTEGER NOT NULL REFERENCES divisions(id) ON DELETE CASCADE,
    UNIQUE (scorecard_id, division_id)
);

CREATE TABLE IF NOT EXISTS scorecard_regions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scorecard_id INTEGER NOT NULL REFERENCES scorecards(id) ON DELETE CASCADE,
    region_id INTEGER NOT NULL REFERENCES regions(id) ON DELETE CASCADE,
    UNIQUE (scorecard_id, region_id)
);

CREATE TABLE IF NOT EXISTS campaigns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    description TEXT,
    goals TEXT,
    key_findings TEXT,
    status TEXT NOT NULL DEFAULT 'planning',
    owner_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    metric_id INTEGER REFERENCES metric_definitions(id) ON DELETE SET NULL,
    division_id INTEGER REFERENCES divisions(id) ON DELETE SET NULL,
    region_id INTEGER REFERENCES regions(id) ON DELETE SET NULL,
    start_date TEXT,
    end_date TEXT,
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (organization_id, slug)
);

CREATE TABLE IF NOT EXISTS campaign_share_links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    campaign_id INTEGER NOT NULL REFERENCES campaigns(id) ON DELETE CASCADE,
    token TEXT NOT NULL UNIQUE,
    created_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
    expires_at TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS driver_diagrams (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'draft',
    metric_id INTEGER REFERENCES metric_definitions(id) ON DELETE SET NULL,
    campaign_id INTEGER REFERENCES campaigns(id) ON DELETE SET NULL,
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (organization_id, slug)
);

CREATE TABLE IF NOT EXISTS driver_nodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    diagram_id INTEGER NOT NULL REFERENCES driver_diagrams(id) ON DELETE CASCADE,
    parent_id INTEGER REFERENCES driver_nodes(id) ON DELETE CASCADE,
    node_type TEXT NOT NULL,
    text TEXT NOT NULL,
    description TEXT,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pdsa_cycles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    cycle_number INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'planning',
    outcome TEXT,
    diagram_id INTEGER REFERENCES driver_diagrams(id) ON DELETE SET NULL,
    metric_id INTEGER REFERENCES metric_definitions(id) ON DELETE SET NULL,
    change_idea_node_id INTEGER REFERENCES driver_nodes(id) ON DELETE SET NULL,
    plan_description TEXT,
    plan_prediction TEXT,
    plan_data_collection TEXT,
    plan_start_date TEXT,
    do_observations TEXT,
    do_start_date TEXT,
    do_end_date TEXT,
    study_results TEXT,
    study_learnings TEXT,
    study_date TEXT,
    act_decision TEXT,
    act_next_steps TEXT,
    act_date TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS action_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'open',
    priority TEXT NOT NULL DEFAULT 'medium',
    due_date TEXT,
    completed_at TEXT,
    campaign_id INTEGER REFERENCES campaigns(id) ON DELETE SET NULL,
    pdsa_cycle_id INTEGER REFERENCES pdsa_cycles(id) ON DELETE SET NULL,
    assignee_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS training_phases (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    description TEXT,
    sort_order INTEGER NOT NULL DEFAULT 0,
    min_days INTEGER,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    UNIQUE (organization_id, slug)
);

CREATE TABLE IF NOT EXISTS trainee_phases (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    trainee_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    phase_id INTEGER NOT NULL REFERENCES training_phases(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'not_started',
    start_date TEXT,
    end_date TEXT,
    signoff_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
    signoff_date TEXT,
    notes TEXT,
    UNIQUE (trainee_id, phase_id)
);

CREATE TABLE IF NOT EXISTS training_assignments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    trainee_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    fto_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    start_date TEXT NOT NULL,
    end_date TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    notes TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS training_assignment_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    requester_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    trainee_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    reason TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    reviewed_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
    reviewed_at TEXT,
    review_notes TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS evaluation_categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    description TEXT,
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    UNIQUE (organization_id, slug)
);

CREATE TABLE IF NOT EXISTS daily_evaluations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    trainee_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    fto_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    phase_id INTEGER REFERENCES training_phases(id) ON DELETE SET NULL,
    evaluation_date TEXT NOT NULL,
    overall_rating REAL NOT NULL,
    narrative TEXT,
    most_satisfactory TEXT,
    least_satisfactory TEXT,
    recommend_action TEXT NOT NULL DEFAULT 'continue',
    nrt_flag INTEGER NOT NULL DEFAULT 0,
    rem_flag INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'draft',
    trainee_acknowledged INTEGER NOT NULL DEFAULT 0,
    acknowledged_at TEXT,
    submitted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS evaluation_ratings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    evaluation_id INTEGER NOT NULL REFERENCES daily_evaluations(id) ON DELETE CASCADE,
    category_id INTEGER NOT NULL REFERENCES evaluation_categories(id) ON DELETE CASCADE,
    rating INTEGER NOT NULL,
    comments TEXT,
    UNIQUE (evaluation_id, category_id)
);

CREATE TABLE IF NOT EXISTS supervisor_notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    evaluation_id INTEGER NOT NULL REFERENCES daily_evaluations(id) ON DELETE CASCADE,
    author_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    note TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS skill_categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    description TEXT,
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    UNIQUE (organization_id, slug)
);

CREATE TABLE IF NOT EXISTS skills (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    category_id INTEGER NOT NULL REFERENCES skill_categories(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    description TEXT,
    is_critical INTEGER NOT NULL DEFAULT 0,
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    UNIQUE (organization_id, slug)
);

CREATE TABLE IF NOT EXISTS skill_steps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    skill_id INTEGER NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
    step_number INTEGER NOT NULL,
    description TEXT NOT NULL,
    is_required INTEGER NOT NULL DEFAULT 1,
    UNIQUE (skill_id, step_number)
);

CREATE TABLE IF NOT EXISTS skill_signoffs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    trainee_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    skill_id INTEGER NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
    fto_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    signoff_date TEXT NOT NULL,
    notes TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (trainee_id, skill_id)
);

CREATE TABLE IF NOT EXISTS coaching_activities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    category_id INTEGER NOT NULL REFERENCES evaluation_categories(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    activity_type TEXT NOT NULL DEFAULT 'reading',
    content TEXT,
    difficulty TEXT NOT NULL DEFAULT 'basic',
    estimated_mins INTEGER NOT NULL DEFAULT 15,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS trainee_coaching_assignments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    trainee_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    activity_id INTEGER NOT NULL REFERENCES coaching_activities(id) ON DELETE CASCADE,
    evaluation_id INTEGER REFERENCES daily_evaluations(id) ON DELETE SET NULL,
    status TEXT NOT NULL DEFAULT 'assigned',
    progress INTEGER NOT NULL DEFAULT 0,
    score REAL,
    response TEXT,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS trainee_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
    trainee_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    token TEXT NOT NULL UNIQUE,
    title TEXT,
    snapshot_json TEXT NOT NULL,
    created_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
    expires_at TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_metric_entries_natural_key
    ON metric_entries (metric_id, department_id, COALESCE(division_id, 0), COALESCE(region_id, 0), period_type, period_start);
CREATE INDEX IF NOT EXISTS idx_metric_entries_scope ON metric_entries (organization_id, metric_id, period_start);
CREATE UNIQUE INDEX IF NOT EXISTS idx_metric_associations_scope
    ON metric_associations (metric_id, division_id, COALESCE(region_id, 0));
CREATE INDEX IF NOT EXISTS idx_login_attempts_identifier ON login_attempts (identifier, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_log_org_created ON audit_log (organization_id, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_log_entity ON audit_log (entity, entity_id);
CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions (user_id);
CREATE INDEX IF NOT EXISTS idx_daily_evaluations_trainee ON daily_evaluations (trainee_id, evaluation_date);
CREATE INDEX IF NOT EXISTS idx_coaching_assignments_trainee ON trainee_coaching_assignments (trainee_id, status)
"""


def table_columns(conn, table: str) -> List[str]:
    if isinstance(conn, PostgresCompatConnection):
        rows = conn.execute(
            "SELECT column_name AS name FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = ?",
            (table,),
        ).fetchall()
    else:
        rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return [str(row["name"]).lower() for row in rows]


def ensure_column(conn, table: str, column: str, ddl: str) -> None:
    if column.lower() in table_columns(conn, table):
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    logger.info("Added column %s.%s", table, column)


def run_schema_upgrades(conn) -> None:
    """Additive upgrades for databases created by earlier releases."""
    ensure_column(conn, "audit_log", "changes", "TEXT")
    ensure_column(conn, "metric_entries", "created_by", "INTEGER")
    ensure_column(conn, "campaigns", "key_findings", "TEXT")
    ensure_column(conn, "daily_evaluations", "submitted_at", "TEXT")


def init_db() -> None:
    """Create the schema and seed defaults. Safe to call repeatedly."""
    conn = db_connect()
    try:
        conn.executescript(SCHEMA)
        run_schema_upgrades(conn)
        seed_defaults(conn)
        conn.commit()
    finally:
        conn.close()


DEFAULT_EVALUATION_CATEGORIES = [
    "Patient Assessment",
    "Clinical Decision Making",
    "Treatment Skills",
    "Communication",
    "Scene Management",
    "Documentation",
    "Professionalism",
]

DEFAULT_TRAINING_PHASES = [
    ("Orientation", 7),
    ("Phase 1: Observation", 14),
    ("Phase 2: Guided Practice", 28),
    ("Phase 3: Independent Practice", 28),
    ("Release Evaluation", 7),
]


def seed_defaults(conn) -> None:
    """Seed the default organization, its admin and baseline field-training lookups."""
    org_slug = slugify(config.DEFAULT_ORG_SLUG) or "ems"
    row = conn.execute("SELECT id FROM organizations WHERE slug = ?", (org_slug,)).fetchone()
    if row:
        org_id = int(row["id"])
    else:
        cur = conn.execute(
            "INSERT INTO organizations (name, slug, created_at) VALUES (?, ?, ?)",
            (config.DEFAULT_ORG_NAME, org_slug, iso()),
        )
        org_id = int(cur.lastrowid)
        logger.info("Created organization %s (%s)", config.DEFAULT_ORG_NAME, org_slug)

    admin = conn.execute("SELECT id FROM users WHERE email = ?", (config.ADMIN_EMAIL,)).fetchone()
    if admin:
        admin_id = int(admin["id"])
    else:
        pw_hash, pw_salt = hash_password(config.ADMIN_PASSWORD)
        first, _, last = config.ADMIN_NAME.partition(" ")
        cur = conn.execute(
            """
            INSERT INTO users
            (email, first_name, last_name, password_hash, password_salt, status, is_active, is_superuser, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'active', 1, 1, ?, ?)
            """,
            (config.ADMIN_EMAIL, first, last, pw_hash, pw_salt, iso(), iso()),
        )
        admin_id = int(cur.lastrowid)
        logger.info("Seeded admin account %s", config.ADMIN_EMAIL)

    if not conn.execute(
        "SELECT id FROM memberships WHERE user_id = ? AND organization_id = ?",
        (admin_id, org_id),
    ).fetchone():
        conn.execute(
            "INSERT INTO memberships (user_id, organization_id, role, created_at) VALUES (?, ?, 'admin', ?)",
            (admin_id, org_id, iso()),
        )

    if conn.execute("SELECT COUNT(*) AS c FROM evaluation_categories WHERE organization_id = ?", (org_id,)).fetchone()["c"] == 0:
        for idx, name in enumerate(DEFAULT_EVALUATION_CATEGORIES):
            conn.execute(
                """
                INSERT INTO evaluation_categories (organization_id, name, slug, sort_order, is_active, created_at)
                VALUES (?, ?, ?, ?, 1, ?)
                """,
                (org_id, name, slugify(name), idx, iso()),
            )

    if conn.execute("SELECT COUNT(*) AS c FROM training_phases WHERE organization_id = ?", (org_id,)).fetchone()["c"] == 0:
        for idx, (name, min_days) in enumerate(DEFAULT_TRAINING_PHASES):
            conn.execute(
                """
                INSERT INTO training_phases (organization_id, name, slug, sort_order, min_days, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, 1, ?)
                """,
                (org_id, name, slugify(name), idx, min_days, iso()),
            )


def ensure_bootstrap() -> None:
    """Initialize the database once per process, under a lock for threaded servers."""
    global BOOTSTRAPPED
    if BOOTSTRAPPED:
        return
    with BOOTSTRAP_LOCK:
        if BOOTSTRAPPED:
            return
        try:
            init_db()
        except Exception:
            logger.exception("Database bootstrap failed")
            raise
        BOOTSTRAPPED = True


def default_org_id(conn) -> Optional[int]:
    row = conn.execute("SELECT id FROM organizations ORDER BY id LIMIT 1").fetchone()
    return int(row["id"]) if row else None


def get_scoped_row(conn, table: str, org_id: int, row_id: Any, entity: str):
    """Fetch one tenant row by id or raise NotFoundError naming ``entity``."""
    row = conn.execute(
        f"SELECT * FROM {table} WHERE id = ? AND organization_id = ?",
        (row_id, org_id),
    ).fetchone()
    if not row:
        raise NotFoundError(entity)
    return row
