"""
SQLite Database Layer
=====================
Persistent storage for extracted questions. Every auto-saved or manually
saved question becomes one row; options are stored as a JSON array where
diagram options keep their document structure.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from .models import DiagramDocument, QuestionRecord

logger = logging.getLogger(__name__)

# Default database path: project_root/database.sqlite
_DEFAULT_DB_PATH = str(Path(__file__).parent.parent / "database.sqlite")


def get_db_path() -> str:
    """Return the configured database path."""
    return os.environ.get("QEXTRACT_DB_PATH", _DEFAULT_DB_PATH)


@contextmanager
def get_connection(db_path: str = None):
    """
    Context manager for database connections.
    Commits on success, rolls back on error, always closes.
    """
    db_path = db_path or get_db_path()
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str = None):
    """
    Initialize the database schema.
    Safe to call multiple times.
    """
    db_path = db_path or get_db_path()
    logger.info(f"Initializing database at: {db_path}")

    with get_connection(db_path) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS questions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                course_id TEXT NOT NULL,
                year INTEGER NOT NULL,
                slot TEXT DEFAULT NULL,
                part TEXT DEFAULT NULL,
                question_type TEXT NOT NULL,
                question_statement TEXT DEFAULT '',
                options_json TEXT DEFAULT NULL,
                correct_marks REAL DEFAULT 4,
                incorrect_marks REAL DEFAULT -1,
                skipped_marks REAL DEFAULT 0,
                partial_marks REAL DEFAULT 0,
                time_minutes INTEGER DEFAULT 3,
                categorized INTEGER DEFAULT 0,
                source_file TEXT DEFAULT '',
                page_number INTEGER DEFAULT 0,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_questions_course_id
                ON questions(course_id);
        """)


# ─── Question CRUD ────────────────────────────────────────────────────────────


def _options_to_json(record: QuestionRecord) -> Optional[str]:
    if record.options is None:
        return None
    items = [
        opt.model_dump(by_alias=True, exclude_none=True)
        if isinstance(opt, DiagramDocument) else opt
        for opt in record.options
    ]
    return json.dumps(items, ensure_ascii=False)


def insert_question(record: QuestionRecord, db_path: str = None) -> int:
    """Insert one question. Returns the question id."""
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            """INSERT INTO questions
               (course_id, year, slot, part, question_type,
                question_statement, options_json, correct_marks,
                incorrect_marks, skipped_marks, partial_marks, time_minutes,
                categorized, source_file, page_number)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (record.course_id, record.year, record.slot, record.part,
             record.question_type.value, record.question_statement,
             _options_to_json(record), record.correct_marks,
             record.incorrect_marks, record.skipped_marks,
             record.partial_marks, record.time_minutes,
             int(record.categorized), record.source_file,
             record.page_number),
        )
        return cursor.lastrowid


def bulk_insert_questions(
    records: list[QuestionRecord], db_path: str = None
) -> list[int]:
    """Insert several questions, one row each. Returns the new ids in order."""
    return [insert_question(r, db_path=db_path) for r in records]


def _row_to_record(row: sqlite3.Row) -> QuestionRecord:
    options = json.loads(row["options_json"]) if row["options_json"] else None
    return QuestionRecord(
        question_type=row["question_type"],
        question_statement=row["question_statement"],
        options=options,
        correct_marks=row["correct_marks"],
        incorrect_marks=row["incorrect_marks"],
        skipped_marks=row["skipped_marks"],
        partial_marks=row["partial_marks"],
        time_minutes=row["time_minutes"],
        course_id=row["course_id"],
        year=row["year"],
        slot=row["slot"],
        part=row["part"],
        categorized=bool(row["categorized"]),
        source_file=row["source_file"],
        page_number=row["page_number"],
    )


def list_questions(
    course_id: Optional[str] = None, db_path: str = None
) -> list[QuestionRecord]:
    """All stored questions in insertion order, optionally for one course."""
    with get_connection(db_path) as conn:
        if course_id is None:
            rows = conn.execute(
                "SELECT * FROM questions ORDER BY id"
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM questions WHERE course_id = ? ORDER BY id",
                (course_id,),
            ).fetchall()
    return [_row_to_record(r) for r in rows]


def count_questions(course_id: Optional[str] = None, db_path: str = None) -> int:
    with get_connection(db_path) as conn:
        if course_id is None:
            row = conn.execute("SELECT COUNT(*) AS n FROM questions").fetchone()
        else:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM questions WHERE course_id = ?",
                (course_id,),
            ).fetchone()
    return row["n"]
