import json
import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from db_pool import SQLiteConnectionPool
from schemas import CandidateItem

DB_PATH = os.getenv("DB_PATH", "items.db")

_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def configure(path: str) -> None:
    """Point the module at another database file and reset the pool."""
    global DB_PATH, _pool
    _pool.close_all()
    DB_PATH = path
    _pool = SQLiteConnectionPool(path, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()) -> Optional[int]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        con.commit()
        return cur.lastrowid


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        return cur.fetchall()


# -------------- schema --------------
def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS accepted_items (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              category      TEXT NOT NULL,
              difficulty    TEXT NOT NULL,
              grade_level   INTEGER NOT NULL,
              question_text TEXT NOT NULL,
              answer        TEXT NOT NULL,
              answer_type   TEXT NOT NULL,
              operands      TEXT NOT NULL,
              explanation   TEXT NOT NULL,
              choices       TEXT,
              source        TEXT NOT NULL DEFAULT 'generated',
              template_id   TEXT,
              enhanced      INTEGER NOT NULL DEFAULT 0,
              created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_items_lookup
              ON accepted_items(category, grade_level, difficulty);
            """
        )
        con.commit()


# -------------- accepted items --------------
def save_item(item: CandidateItem) -> int:
    """Insert one accepted or fallback item and return its row id."""
    row_id = _exec(
        """
        INSERT INTO accepted_items
          (category, difficulty, grade_level, question_text, answer, answer_type,
           operands, explanation, choices, source, template_id, enhanced)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            item.category,
            item.difficulty,
            item.grade_level,
            item.question_text,
            json.dumps(item.answer),
            item.answer_type,
            json.dumps(item.operands),
            item.explanation,
            json.dumps(item.choices),
            item.source,
            item.template_id,
            1 if item.enhanced else 0,
        ),
    )
    return int(row_id or 0)


def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    for key in ("answer", "operands", "choices"):
        raw = data.get(key)
        if raw is None:
            continue
        try:
            data[key] = json.loads(raw)
        except json.JSONDecodeError:
            pass
    data["enhanced"] = bool(data.get("enhanced"))
    return data


def _filters(category: Optional[str], grade_level: Optional[int], difficulty: Optional[str]) -> tuple[str, list]:
    clauses: List[str] = []
    params: list = []
    if category:
        clauses.append("category = ?")
        params.append(category)
    if grade_level is not None:
        clauses.append("grade_level = ?")
        params.append(int(grade_level))
    if difficulty:
        clauses.append("difficulty = ?")
        params.append(difficulty)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def list_items(
    category: Optional[str] = None,
    grade_level: Optional[int] = None,
    difficulty: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    """Newest-first accepted items, optionally filtered."""
    where, params = _filters(category, grade_level, difficulty)
    rows = _query(
        f"SELECT * FROM accepted_items{where} ORDER BY id DESC LIMIT ?",
        params + [max(1, int(limit))],
    )
    return [_row_to_dict(row) for row in rows]


def count_items(
    category: Optional[str] = None,
    grade_level: Optional[int] = None,
    difficulty: Optional[str] = None,
) -> int:
    where, params = _filters(category, grade_level, difficulty)
    rows = _query(f"SELECT COUNT(*) AS n FROM accepted_items{where}", params)
    return int(rows[0]["n"]) if rows else 0
