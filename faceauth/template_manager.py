"""
Template Manager Module

SQLite persistence for enrolled face templates and the verification audit
trail.

Tables:
- employees: one serialized template per employee, with its training score
- verification_logs: every ACCEPTED/REJECTED verification outcome

Templates are stored as the serialized text produced by
faceauth.template_store, so the database never holds raw arrays. A new
enrollment overwrites the previous template wholesale.

Usage:
    from faceauth.template_manager import get_template_manager

    manager = get_template_manager()
    manager.put_template("emp_001", serialized, 91.5)
    stored = manager.get_template("emp_001")
"""

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from faceauth.exceptions import MalformedStoredTemplate
from faceauth.template_store import DESCRIPTOR_DIM, deserialize, is_legacy, upgrade

logger = logging.getLogger(__name__)


class TemplateManager:
    """
    Manages persistence and retrieval of face templates.

    Attributes:
        db_path: Path to the SQLite database file (":memory:" allowed).
        descriptor_dim: Expected descriptor length, used to validate
                        templates before they are written.
    """

    def __init__(self, db_path: str, descriptor_dim: int = DESCRIPTOR_DIM):
        """
        Initialize the TemplateManager.

        Creates the database and its parent directory if they don't exist.

        Args:
            db_path: Path to SQLite database file.
            descriptor_dim: Expected descriptor length.
        """
        self.db_path = db_path
        self.descriptor_dim = descriptor_dim
        self._conn: Optional[sqlite3.Connection] = None

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

        logger.info(f"TemplateManager initialized: db={self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the SQLite connection (Row factory for dict-like access)."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self) -> None:
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS employees (
                employee_id TEXT PRIMARY KEY,
                face_template TEXT NOT NULL,
                training_score REAL NOT NULL,
                enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS verification_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                employee_id TEXT,
                timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                accepted BOOLEAN,
                best_similarity INTEGER,
                best_confidence REAL,
                threshold INTEGER,
                frames_processed INTEGER,
                resolved_by_timeout BOOLEAN,
                elapsed_ms INTEGER,
                FOREIGN KEY (employee_id) REFERENCES employees(employee_id)
            )
        """)

        conn.commit()
        logger.debug("Database schema initialized")

    def put_template(self, employee_id: str, serialized: str, training_score: float) -> None:
        """
        Store an employee's template, replacing any previous one.

        Args:
            employee_id: Employee identifier.
            serialized: Template text from template_store.serialize().
            training_score: Enrollment score, clamped to [0, 100].

        Raises:
            MalformedStoredTemplate: If the template does not decode.
        """
        deserialize(serialized, self.descriptor_dim)
        score = max(0.0, min(100.0, float(training_score)))

        conn = self._get_connection()
        conn.execute("""
            INSERT OR REPLACE INTO employees (employee_id, face_template, training_score, enrolled_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        """, (employee_id, serialized, score))
        conn.commit()

        logger.info(f"Saved template for {employee_id} (training score {score:.2f})")

    def get_template(self, employee_id: str) -> Optional[str]:
        """Return the stored template text, or None if not enrolled."""
        row = self._get_connection().execute(
            "SELECT face_template FROM employees WHERE employee_id = ?", (employee_id,)
        ).fetchone()
        return None if row is None else row["face_template"]

    def get_training_score(self, employee_id: str) -> Optional[float]:
        row = self._get_connection().execute(
            "SELECT training_score FROM employees WHERE employee_id = ?", (employee_id,)
        ).fetchone()
        return None if row is None else row["training_score"]

    def get_record(self, employee_id: str) -> Optional[Dict[str, Any]]:
        """
        Get everything stored for one employee.

        Returns:
            Dictionary with employee_id, face_template, training_score and
            enrolled_at, or None if not found.
        """
        row = self._get_connection().execute("""
            SELECT employee_id, face_template, training_score, enrolled_at
            FROM employees
            WHERE employee_id = ?
        """, (employee_id,)).fetchone()

        if row is None:
            return None
        return dict(row)

    def template_exists(self, employee_id: str) -> bool:
        row = self._get_connection().execute(
            "SELECT 1 FROM employees WHERE employee_id = ?", (employee_id,)
        ).fetchone()
        return row is not None

    def delete_template(self, employee_id: str) -> bool:
        """
        Delete an employee's template and verification history.

        Returns:
            True if deleted, False if the employee was not enrolled.
        """
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("DELETE FROM employees WHERE employee_id = ?", (employee_id,))
        if cursor.rowcount == 0:
            logger.warning(f"Cannot delete: employee {employee_id} not found")
            return False

        cursor.execute("DELETE FROM verification_logs WHERE employee_id = ?", (employee_id,))
        conn.commit()

        logger.info(f"Deleted template for employee {employee_id}")
        return True

    def list_employees(self) -> List[Dict[str, Any]]:
        """List enrolled employees (without template text), newest first."""
        rows = self._get_connection().execute("""
            SELECT employee_id, training_score, enrolled_at
            FROM employees
            ORDER BY enrolled_at DESC, employee_id
        """).fetchall()
        return [dict(row) for row in rows]

    def log_verification(self, employee_id: Optional[str], result: Any) -> int:
        """
        Record a verification outcome for auditing.

        Args:
            employee_id: Employee the session verified against.
            result: VerificationResult from the verification controller.

        Returns:
            The log entry ID.
        """
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            INSERT INTO verification_logs
            (employee_id, accepted, best_similarity, best_confidence, threshold,
             frames_processed, resolved_by_timeout, elapsed_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            employee_id,
            bool(result.accepted),
            int(result.best_similarity),
            float(result.best_confidence),
            int(result.threshold),
            int(result.frames_processed),
            bool(result.resolved_by_timeout),
            int(result.elapsed_ms),
        ))
        conn.commit()

        log_id = cursor.lastrowid
        logger.debug(f"Logged verification: id={log_id}, employee={employee_id}, "
                     f"accepted={result.accepted}, similarity={result.best_similarity}")
        return log_id

    def get_verification_logs(
        self,
        employee_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Get verification logs, newest first, optionally for one employee."""
        conn = self._get_connection()

        if employee_id:
            rows = conn.execute("""
                SELECT * FROM verification_logs
                WHERE employee_id = ?
                ORDER BY id DESC
                LIMIT ?
            """, (employee_id, limit)).fetchall()
        else:
            rows = conn.execute("""
                SELECT * FROM verification_logs
                ORDER BY id DESC
                LIMIT ?
            """, (limit,)).fetchall()

        logs = []
        for row in rows:
            entry = dict(row)
            entry["accepted"] = bool(entry["accepted"])
            entry["resolved_by_timeout"] = bool(entry["resolved_by_timeout"])
            logs.append(entry)
        return logs

    def migrate_legacy_templates(self) -> int:
        """
        Rewrite every legacy-format template in the canonical format.

        Templates that cannot be decoded are left untouched and logged;
        those employees must re-enroll.

        Returns:
            Number of templates upgraded.
        """
        conn = self._get_connection()
        rows = conn.execute("SELECT employee_id, face_template FROM employees").fetchall()

        upgraded = 0
        for row in rows:
            text = row["face_template"]
            if not is_legacy(text):
                continue

            try:
                canonical = upgrade(text, self.descriptor_dim)
            except MalformedStoredTemplate as e:
                logger.warning(f"Skipping undecodable template for {row['employee_id']}: {e}")
                continue

            conn.execute(
                "UPDATE employees SET face_template = ? WHERE employee_id = ?",
                (canonical, row["employee_id"]),
            )
            upgraded += 1

        conn.commit()
        logger.info(f"Migrated {upgraded} legacy template(s) out of {len(rows)}")
        return upgraded

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the template database.

        Returns:
            Dictionary with total_employees, average_training_score,
            total_verifications and accepted_verifications.
        """
        conn = self._get_connection()

        employee_stats = conn.execute(
            "SELECT COUNT(*) AS count, AVG(training_score) AS avg_score FROM employees"
        ).fetchone()
        log_stats = conn.execute(
            "SELECT COUNT(*) AS total, SUM(accepted) AS accepted FROM verification_logs"
        ).fetchone()

        return {
            "total_employees": employee_stats["count"] or 0,
            "average_training_score": employee_stats["avg_score"],
            "total_verifications": log_stats["total"] or 0,
            "accepted_verifications": int(log_stats["accepted"] or 0),
        }

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Database connection closed")

    def __del__(self):
        self.close()


# Singleton instance for the manager
_manager_instance: Optional[TemplateManager] = None


def get_template_manager(db_path: Optional[str] = None) -> TemplateManager:
    """
    Get or create the singleton TemplateManager instance.

    Args:
        db_path: Path to SQLite database. If None, uses storage.db_path
                 from config.yaml, relative to the project root.

    Returns:
        The shared TemplateManager instance.
    """
    global _manager_instance

    if _manager_instance is None:
        from faceauth.config import get_detector_config, get_project_root, get_storage_config

        if db_path is None:
            db_path = str(get_project_root() / get_storage_config()["db_path"])

        descriptor_dim = int(get_detector_config().get("descriptor_dim", DESCRIPTOR_DIM))
        _manager_instance = TemplateManager(db_path, descriptor_dim)

    return _manager_instance
