"""Shared test fixtures for the stepsql test suite.

* ``sales_db``     -- small DuckDB file with customers and orders, precisely counted
* ``empty_db``     -- DuckDB file without tables
* ``clean_env``    -- strips STEPSQL_* / provider variables so defaults apply
"""

from __future__ import annotations

from pathlib import Path

import duckdb
import pytest

_CUSTOMERS = [
    (1, "Acme", "US"),
    (2, "Globex", "UK"),
    (3, "Initech", "US"),
]

_ORDERS = [
    (10, 1, 120.0, "completed"),
    (11, 1, 80.0, "completed"),
    (12, 2, 200.0, "pending"),
    (13, 3, 50.0, "completed"),
    (14, 3, 25.0, "failed"),
]


@pytest.fixture
def sales_db(tmp_path: Path) -> Path:
    db_path = tmp_path / "sales.duckdb"
    conn = duckdb.connect(str(db_path))
    try:
        conn.execute("CREATE TABLE customers (customer_id INTEGER, name VARCHAR, country VARCHAR)")
        conn.execute(
            "CREATE TABLE orders (order_id INTEGER, customer_id INTEGER, amount DOUBLE, status VARCHAR)"
        )
        conn.executemany("INSERT INTO customers VALUES (?, ?, ?)", _CUSTOMERS)
        conn.executemany("INSERT INTO orders VALUES (?, ?, ?, ?)", _ORDERS)
    finally:
        conn.close()
    return db_path


@pytest.fixture
def empty_db(tmp_path: Path) -> Path:
    db_path = tmp_path / "empty.duckdb"
    duckdb.connect(str(db_path)).close()
    return db_path


@pytest.fixture
def clean_env(monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith("STEPSQL_") or key in {"OPENAI_API_KEY", "ANTHROPIC_API_KEY"}:
            monkeypatch.delenv(key, raising=False)
    return monkeypatch
