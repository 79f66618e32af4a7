"""Test cases for db operations."""

import sqlite3

import pytest

import db
from db import _conn, _query, count_items, list_items, save_item
from db_pool import SQLiteConnectionPool
from schemas import CandidateItem


def _item(**overrides):
    fields = dict(
        category="multiplication",
        operands=[6, 7],
        answer=42,
        answer_type="numeric",
        question_text="What is 6 × 7?",
        explanation="Multiply 6 by 7: 6 groups of 7. The answer is 42.",
        choices=[42, 48, 35, 49],
        grade_level=5,
        difficulty="medium",
    )
    fields.update(overrides)
    return CandidateItem(**fields)


def test_save_and_list_round_trip(temp_db):
    row_id = save_item(_item())
    assert row_id > 0

    (row,) = list_items()
    assert row["id"] == row_id
    assert row["answer"] == 42
    assert row["operands"] == [6, 7]
    assert row["choices"] == [42, 48, 35, 49]
    assert row["enhanced"] is False
    assert row["source"] == "generated"
    assert row["created_at"]


def test_fraction_answers_keep_their_type(temp_db):
    save_item(
        _item(
            category="fraction_addition",
            operands=["1/4", "1/4"],
            answer="1/2",
            answer_type="string",
            question_text="What is 1/4 + 1/4?",
            explanation="Add the numerators: 1/4 + 1/4 = 1/2.",
            choices=["1/2", "2/8", "1/4", "3/4"],
        )
    )
    (row,) = list_items(category="fraction_addition")
    assert row["answer"] == "1/2"
    assert row["operands"] == ["1/4", "1/4"]


def test_filters_and_newest_first(temp_db):
    save_item(_item())
    save_item(_item(grade_level=4, difficulty="easy", question_text="What is 2 × 3?", operands=[2, 3], answer=6,
                    choices=[6, 5, 8, 9]))
    save_item(_item(source="fallback", template_id="multiplication-medium-1", enhanced=True,
                    question_text="What is 4 × 6?", operands=[4, 6], answer=24, choices=[24, 20, 28, 30]))

    rows = list_items(category="multiplication")
    assert [row["answer"] for row in rows] == [24, 6, 42]
    assert rows[0]["template_id"] == "multiplication-medium-1"
    assert rows[0]["enhanced"] is True

    assert count_items() == 3
    assert count_items(grade_level=4) == 1
    assert count_items(difficulty="medium", grade_level=5) == 2
    assert count_items(category="division") == 0
    assert len(list_items(limit=2)) == 2


def test_schema_has_lookup_index(temp_db):
    names = {row["name"] for row in _query("SELECT name FROM sqlite_master WHERE type = 'index'")}
    assert "idx_items_lookup" in names


def test_configure_switches_database(temp_db, tmp_path):
    save_item(_item())
    other = tmp_path / "other.db"
    db.configure(str(other))
    db.init()
    try:
        assert count_items() == 0
    finally:
        db.configure(temp_db)
    assert count_items() == 1


def test_pool_reuses_connections(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "pool.db"), max_connections=2)
    with pool.get_connection() as first:
        first.execute("CREATE TABLE t (x INTEGER)")
    with pool.get_connection() as second:
        assert second is first
    pool.close_all()


def test_pool_rolls_back_after_errors(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "pool.db"), max_connections=1)
    with pool.get_connection() as con:
        con.execute("CREATE TABLE t (x INTEGER)")
        con.commit()
    with pytest.raises(sqlite3.OperationalError):
        with pool.get_connection() as con:
            con.execute("INSERT INTO t VALUES (1)")
            con.execute("SELECT * FROM missing_table")
    with pool.get_connection() as again:
        assert again is con
        assert again.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0
    pool.close_all()


def test_conn_rows_are_mappings(temp_db):
    with _conn() as con:
        row = con.execute("SELECT 1 AS one").fetchone()
    assert row["one"] == 1
