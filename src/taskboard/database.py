"""
Task Database Layer

Provides one TaskDatabase interface with an implementation per SQL dialect:

- SQLiteTaskDatabase: single WAL-mode connection shared across threads
- PostgresTaskDatabase: psycopg2 threaded connection pool, RealDictCursor rows
- MySQLTaskDatabase: single PyMySQL connection, DictCursor rows

Subclasses only differ in placeholder style, timestamp expression, DDL and how
rows come back from the driver. Every public method returns plain dicts, so the
request handlers never see which backend is active.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List, Sequence

import pymysql
from psycopg2 import Error as PostgresError
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool
from pymysql.constants import CLIENT
from pymysql.cursors import DictCursor

from .config import Backend, Settings
from .models import TaskStatus, UserType

logger = logging.getLogger(__name__)

TASK_COLUMNS = "id, title, description, status, week_start, assigned_by, created_at, completed_at"
USER_COLUMNS = "id, name, email, user_type, created_at"


class TaskDatabase(ABC):
    """
    Dialect-neutral task and user queries.

    Subclasses provide the driver plumbing (_fetch_all, _execute, _insert) and
    the schema; the SQL for the five task operations is written once here using
    ``placeholder`` and ``current_timestamp``.
    """

    backend: Backend
    placeholder = "?"
    current_timestamp = "CURRENT_TIMESTAMP"

    @abstractmethod
    def _fetch_all(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a row-returning statement and return every row as a dict."""

    @abstractmethod
    def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the affected row count."""

    @abstractmethod
    def _insert(self, query: str, params: Sequence[Any]) -> int:
        """Run an INSERT and return the generated id."""

    @abstractmethod
    def _schema_statements(self) -> List[str]:
        """DDL that creates the users and tasks tables if they are missing."""

    @abstractmethod
    def close(self) -> None:
        """Release connections held by this instance."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _fetch_one(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = self._fetch_all(query, params)
        return rows[0] if rows else None

    def _insert_returning(self, table: str, columns: str, query: str,
                          params: Sequence[Any]) -> Optional[Dict[str, Any]]:
        """Insert a row and read it back with the requested columns."""
        new_id = self._insert(query, params)
        return self._fetch_one(
            f"SELECT {columns} FROM {table} WHERE id = {self.placeholder}", (new_id,)
        )

    def initialize_schema(self) -> None:
        """Create tables and indexes; safe to call on every start-up."""
        for statement in self._schema_statements():
            self._execute(statement)
        logger.info(f"Schema ready on {self.backend.value} backend")

    def ping(self) -> bool:
        """Trivial round trip used by the health probe."""
        return self._fetch_one("SELECT 1 AS ok") is not None

    # Users

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self._fetch_one(
            f"SELECT {USER_COLUMNS} FROM users WHERE id = {self.placeholder}", (user_id,)
        )

    def get_user_role(self, user_id: int) -> Optional[str]:
        """
        Look up a user's role.

        Returns:
            The user's user_type, or None when no such user exists
        """
        row = self._fetch_one(
            f"SELECT user_type FROM users WHERE id = {self.placeholder}", (user_id,)
        )
        return row["user_type"] if row else None

    def create_user(self, name: str, email: Optional[str] = None,
                    user_type: str = UserType.USER.value) -> Dict[str, Any]:
        """Insert a user. Identity is managed elsewhere; this is for seeding."""
        p = self.placeholder
        return self._insert_returning(
            "users", USER_COLUMNS,
            f"INSERT INTO users (name, email, user_type) VALUES ({p}, {p}, {p})",
            (name, email, user_type),
        )

    # Tasks

    def get_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        return self._fetch_one(
            f"SELECT {TASK_COLUMNS} FROM tasks WHERE id = {self.placeholder}", (task_id,)
        )

    def list_tasks(self, user_id: int, week_start: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List a user's tasks, newest first, optionally limited to one week bucket.

        Args:
            user_id: Owner whose tasks are returned
            week_start: ISO date of the week bucket to filter on

        Returns:
            List of task dictionaries in the canonical task shape
        """
        p = self.placeholder
        conditions = [f"user_id = {p}"]
        params: List[Any] = [user_id]
        if week_start:
            conditions.append(f"week_start = {p}")
            params.append(week_start)

        query = f"""
            SELECT {TASK_COLUMNS} FROM tasks
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at DESC, id DESC
        """
        return self._fetch_all(query, params)

    def create_task(self, user_id: int, title: str, description: Optional[str] = None,
                    week_start: Optional[str] = None,
                    assigned_by: Optional[int] = None) -> Dict[str, Any]:
        """
        Insert a pending task owned by ``user_id``.

        ``assigned_by`` is only set when an admin creates the task for someone else.

        Returns:
            The created task row, including generated id and created_at
        """
        p = self.placeholder
        return self._insert_returning(
            "tasks", TASK_COLUMNS,
            f"INSERT INTO tasks (user_id, title, description, week_start, assigned_by) "
            f"VALUES ({p}, {p}, {p}, {p}, {p})",
            (user_id, title, description or None, week_start or None, assigned_by),
        )

    def complete_task(self, task_id: int, user_id: int) -> Optional[Dict[str, Any]]:
        """
        Mark a task completed if and only if ``user_id`` owns it.

        The ownership check and the write are one UPDATE, so nothing can slip in
        between them. Completing an already-completed task keeps its original
        completed_at.

        Returns:
            The updated task, or None when the task is missing or owned by someone else
        """
        p = self.placeholder
        updated = self._execute(
            f"UPDATE tasks SET status = {p}, "
            f"completed_at = COALESCE(completed_at, {self.current_timestamp}) "
            f"WHERE id = {p} AND user_id = {p}",
            (TaskStatus.COMPLETED.value, task_id, user_id),
        )
        if not updated:
            return None
        return self.get_task(task_id)

    # Analytics

    def task_totals(self, week_start: Optional[str] = None) -> Dict[str, int]:
        """Count all tasks and completed tasks, optionally for one week bucket."""
        where = ""
        params: List[Any] = []
        if week_start:
            where = f"WHERE week_start = {self.placeholder}"
            params.append(week_start)

        row = self._fetch_one(f"""
            SELECT COUNT(*) AS assigned,
                   SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed
            FROM tasks {where}
        """, params) or {}
        # SUM over an empty set is NULL; MySQL returns Decimal
        return {
            "assigned": int(row.get("assigned") or 0),
            "completed": int(row.get("completed") or 0),
        }

    def per_user_task_counts(self, week_start: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Assigned and completed counts for every user, including users without tasks.

        The week filter sits in the join condition so the outer join still keeps
        users that have nothing in that week.
        """
        join_filter = ""
        params: List[Any] = []
        if week_start:
            join_filter = f"AND t.week_start = {self.placeholder}"
            params.append(week_start)

        rows = self._fetch_all(f"""
            SELECT u.id AS user_id, u.name,
                   COUNT(t.id) AS assigned,
                   SUM(CASE WHEN t.status = 'completed' THEN 1 ELSE 0 END) AS completed
            FROM users u
            LEFT JOIN tasks t ON t.user_id = u.id {join_filter}
            GROUP BY u.id, u.name
            ORDER BY u.name ASC
        """, params)
        return [{
            "user_id": row["user_id"],
            "name": row["name"],
            "assigned": int(row["assigned"] or 0),
            "completed": int(row["completed"] or 0),
        } for row in rows]


class SQLiteTaskDatabase(TaskDatabase):
    """SQLite backend: one autocommit WAL connection guarded by a re-entrant lock."""

    backend = Backend.SQLITE
    placeholder = "?"
    # ISO-8601 with milliseconds keeps created_at ordering meaningful within a second
    current_timestamp = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    def _initialize_database(self) -> None:
        try:
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,  # Autocommit mode
                check_same_thread=False  # Handlers run queries from worker threads
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _schema_statements(self) -> List[str]:
        now = self.current_timestamp
        return [
            f"""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT UNIQUE,
                user_type TEXT NOT NULL DEFAULT 'user' CHECK (user_type IN ('admin', 'user')),
                created_at TEXT NOT NULL DEFAULT ({now})
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'completed')),
                week_start TEXT,
                assigned_by INTEGER,
                created_at TEXT NOT NULL DEFAULT ({now}),
                completed_at TEXT,
                FOREIGN KEY (user_id) REFERENCES users (id),
                FOREIGN KEY (assigned_by) REFERENCES users (id)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_tasks_user_id ON tasks (user_id)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_week_start ON tasks (week_start)",
        ]

    def _fetch_all(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, tuple(params))
            return [dict(row) for row in cursor.fetchall()]

    def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, tuple(params))
            return cursor.rowcount

    def _insert(self, query: str, params: Sequence[Any]) -> int:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, tuple(params))
            return cursor.lastrowid

    def _insert_returning(self, table, columns, query, params):
        # Hold the lock across insert and read-back so lastrowid matches our row
        with self._connection_lock:
            return super()._insert_returning(table, columns, query, params)

    def close(self) -> None:
        if self._connection:
            self._connection.close()
            self._connection = None


class PostgresTaskDatabase(TaskDatabase):
    """PostgreSQL backend using a psycopg2 ThreadedConnectionPool."""

    backend = Backend.POSTGRES
    placeholder = "%s"
    current_timestamp = "NOW()"

    def __init__(self, dsn: str, min_connections: int = 1, max_connections: int = 10):
        self.dsn = dsn
        try:
            self._pool: Optional[ThreadedConnectionPool] = ThreadedConnectionPool(
                min_connections, max_connections, dsn
            )
        except PostgresError as e:
            raise RuntimeError(f"Failed to initialize PostgreSQL connection pool: {e}")
        logger.info(
            f"PostgreSQL connection pool initialized ({min_connections}-{max_connections} connections)"
        )

    @contextmanager
    def _cursor(self):
        """Borrow a pooled connection for one statement and always hand it back."""
        conn = self._pool.getconn()
        try:
            conn.autocommit = True
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor
        finally:
            self._pool.putconn(conn)

    def _schema_statements(self) -> List[str]:
        return [
            """
            CREATE TABLE IF NOT EXISTS users (
                id SERIAL PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT UNIQUE,
                user_type TEXT NOT NULL DEFAULT 'user' CHECK (user_type IN ('admin', 'user')),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id SERIAL PRIMARY KEY,
                user_id INTEGER NOT NULL REFERENCES users (id),
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'completed')),
                week_start DATE,
                assigned_by INTEGER REFERENCES users (id),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                completed_at TIMESTAMPTZ
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_tasks_user_id ON tasks (user_id)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_week_start ON tasks (week_start)",
        ]

    def _fetch_all(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute(query, tuple(params))
            return [dict(row) for row in cursor.fetchall()]

    def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        with self._cursor() as cursor:
            cursor.execute(query, tuple(params))
            return cursor.rowcount

    def _insert(self, query: str, params: Sequence[Any]) -> int:
        # Inserts normally go through _insert_returning below; kept for the TaskDatabase contract
        row = self._fetch_one(f"{query} RETURNING id", params)
        return row["id"]

    def _insert_returning(self, table, columns, query, params):
        return self._fetch_one(f"{query} RETURNING {columns}", params)

    def close(self) -> None:
        if self._pool:
            self._pool.closeall()
            self._pool = None


def _as_utc(row: Dict[str, Any]) -> Dict[str, Any]:
    """Tag naive DATETIME values from a UTC session with their zone."""
    return {
        key: value.replace(tzinfo=timezone.utc) if isinstance(value, datetime) else value
        for key, value in row.items()
    }


class MySQLTaskDatabase(TaskDatabase):
    """MySQL backend: one PyMySQL connection shared under a lock, reconnecting on demand."""

    backend = Backend.MYSQL
    placeholder = "%s"
    current_timestamp = "NOW(6)"

    def __init__(self, connect_args: Dict[str, Any]):
        self._connect_args = dict(connect_args)
        self._lock = threading.RLock()
        try:
            self._connection = pymysql.connect(
                **self._connect_args,
                charset="utf8mb4",
                cursorclass=DictCursor,
                autocommit=True,
                # NOW(6) and DATETIME values are UTC, like the other backends
                init_command="SET time_zone = '+00:00'",
                # Report matched rather than changed rows, so re-completing a task is not a miss
                client_flag=CLIENT.FOUND_ROWS,
            )
        except pymysql.MySQLError as e:
            raise RuntimeError(
                f"Failed to connect to MySQL at {self._connect_args.get('host')}: {e}"
            )

    @contextmanager
    def _cursor(self):
        with self._lock:
            self._connection.ping(reconnect=True)
            with self._connection.cursor() as cursor:
                yield cursor

    def _schema_statements(self) -> List[str]:
        return [
            """
            CREATE TABLE IF NOT EXISTS users (
                id INT AUTO_INCREMENT PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                email VARCHAR(255) UNIQUE,
                user_type VARCHAR(16) NOT NULL DEFAULT 'user',
                created_at DATETIME(6) NOT NULL DEFAULT CURRENT_TIMESTAMP(6)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id INT AUTO_INCREMENT PRIMARY KEY,
                user_id INT NOT NULL,
                title VARCHAR(255) NOT NULL,
                description TEXT,
                status VARCHAR(16) NOT NULL DEFAULT 'pending',
                week_start DATE NULL,
                assigned_by INT NULL,
                created_at DATETIME(6) NOT NULL DEFAULT CURRENT_TIMESTAMP(6),
                completed_at DATETIME(6) NULL,
                INDEX idx_tasks_user_id (user_id),
                INDEX idx_tasks_week_start (week_start),
                FOREIGN KEY (user_id) REFERENCES users (id),
                FOREIGN KEY (assigned_by) REFERENCES users (id)
            )
            """,
        ]

    def _fetch_all(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute(query, tuple(params))
            return [_as_utc(row) for row in cursor.fetchall()]

    def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        with self._cursor() as cursor:
            cursor.execute(query, tuple(params))
            return cursor.rowcount

    def _insert(self, query: str, params: Sequence[Any]) -> int:
        with self._cursor() as cursor:
            cursor.execute(query, tuple(params))
            return cursor.lastrowid

    def _insert_returning(self, table, columns, query, params):
        with self._lock:
            return super()._insert_returning(table, columns, query, params)

    def close(self) -> None:
        if self._connection:
            self._connection.close()
            self._connection = None


def open_database(settings: Settings, initialize_schema: bool = True) -> TaskDatabase:
    """
    Build the TaskDatabase for the configured backend.

    Called once per process (application lifespan or CLI command); the instance
    is then injected wherever queries are needed.
    """
    backend = settings.backend
    if backend is Backend.POSTGRES:
        db: TaskDatabase = PostgresTaskDatabase(
            settings.database_url,
            settings.pool_min_connections,
            settings.pool_max_connections,
        )
    elif backend is Backend.MYSQL:
        db = MySQLTaskDatabase(settings.mysql_connect_args)
    else:
        db = SQLiteTaskDatabase(settings.sqlite_path)

    logger.info(f"Database backend selected: {backend.value}")
    if initialize_schema:
        db.initialize_schema()
    return db
