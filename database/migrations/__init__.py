"""
SparkyFit Update Migration Runner
=================================

Runs the migration scripts bundled in an update package (migrations/ inside
the archive) against the application database.

- Scripts run in lexicographic filename order (001_x.sql before 002_y.py)
- .sql files are executed with executescript()
- .py files must define migrate(cursor) (or up(cursor))
- Applied scripts are recorded in the migrations table and skipped next time
- Each script commits on its own; a failing script is rolled back and re-raised

Usage:
    from database.migrations import run_migration_scripts
    applied = run_migration_scripts(db_path, staging_dir / 'migrations')
"""

import importlib.util
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Set, Union

logger = logging.getLogger(__name__)

SCRIPT_SUFFIXES = ('.sql', '.py')


class MigrationScriptError(Exception):
    """A migration script failed; the database was rolled back to before it."""

    def __init__(self, script: str, cause: BaseException):
        super().__init__(f"Migration {script} failed: {cause}")
        self.script = script
        self.cause = cause


def _ensure_version_table(cursor: sqlite3.Cursor):
    """Create version tracking table if not exists"""
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS migrations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            migration TEXT NOT NULL UNIQUE,
            batch INTEGER NOT NULL,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)


def _get_applied(cursor: sqlite3.Cursor) -> Set[str]:
    """Get set of already applied migration names"""
    try:
        cursor.execute("SELECT migration FROM migrations")
        return {row[0] for row in cursor.fetchall()}
    except sqlite3.OperationalError:
        return set()


def _next_batch(cursor: sqlite3.Cursor) -> int:
    cursor.execute("SELECT MAX(batch) FROM migrations")
    result = cursor.fetchone()[0]
    return (result or 0) + 1


def discover_scripts(scripts_dir: Path) -> List[Path]:
    """Migration scripts in execution order."""
    scripts_dir = Path(scripts_dir)
    if not scripts_dir.is_dir():
        return []
    return sorted(
        (p for p in scripts_dir.iterdir() if p.is_file() and p.suffix in SCRIPT_SUFFIXES),
        key=lambda p: p.name,
    )


def _run_python_script(path: Path, cursor: sqlite3.Cursor):
    spec = importlib.util.spec_from_file_location(f"sparkyfit_migration_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load migration {path.name}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    func = getattr(module, 'migrate', None) or getattr(module, 'up', None)
    if func is None:
        raise AttributeError(f"{path.name} defines neither migrate() nor up()")
    func(cursor)


def _run_sql_script(path: Path, cursor: sqlite3.Cursor):
    # executescript() commits implicitly before running, so wrap it ourselves
    sql = path.read_text(encoding='utf-8')
    cursor.executescript(f"BEGIN;\n{sql}\nCOMMIT;")


def run_migration_scripts(
    database: Union[str, Path, sqlite3.Connection],
    scripts_dir: Path,
) -> List[str]:
    """
    Apply every pending script in scripts_dir.

    Args:
        database: SQLite path or open connection
        scripts_dir: directory holding the package's migration scripts

    Returns:
        Names of the scripts applied in this run

    Raises:
        MigrationScriptError: first failing script (earlier ones stay applied)
    """
    scripts = discover_scripts(scripts_dir)
    if not scripts:
        logger.info("[Migration] No migration scripts in package")
        return []

    owns_connection = not isinstance(database, sqlite3.Connection)
    if owns_connection:
        Path(database).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(database))
    else:
        conn = database

    try:
        cursor = conn.cursor()
        _ensure_version_table(cursor)
        conn.commit()

        applied = _get_applied(cursor)
        batch = _next_batch(cursor)
        applied_now: List[str] = []

        for script in scripts:
            if script.name in applied:
                logger.debug(f"[Migration] {script.name} already applied")
                continue

            try:
                logger.info(f"[Migration] Applying {script.name}")
                if script.suffix == '.sql':
                    _run_sql_script(script, cursor)
                else:
                    _run_python_script(script, cursor)
                cursor.execute(
                    "INSERT INTO migrations (migration, batch, applied_at) VALUES (?, ?, ?)",
                    (script.name, batch, datetime.now().isoformat())
                )
                conn.commit()
                applied_now.append(script.name)
                logger.info(f"[Migration] {script.name} applied successfully")
            except Exception as e:
                if conn.in_transaction:
                    conn.rollback()
                logger.error(f"[Migration] {script.name} failed: {e}")
                raise MigrationScriptError(script.name, e) from e

        if not applied_now:
            logger.info("[Migration] All migrations already applied")
        else:
            logger.info(f"[Migration] Applied {len(applied_now)} migration(s)")
        return applied_now

    finally:
        if owns_connection:
            conn.close()


def get_applied_migrations(database: Union[str, Path, sqlite3.Connection]) -> List[str]:
    """Applied migration names, oldest first."""
    owns_connection = not isinstance(database, sqlite3.Connection)
    conn = sqlite3.connect(str(database)) if owns_connection else database
    try:
        cursor = conn.cursor()
        try:
            cursor.execute("SELECT migration FROM migrations ORDER BY id")
            return [row[0] for row in cursor.fetchall()]
        except sqlite3.OperationalError:
            return []
    finally:
        if owns_connection:
            conn.close()
