from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
TESTS_DIR = Path(__file__).resolve().parent
for path in (PROJECT_ROOT, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from record_collector.db import open_store


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "records.sqlite3")


@pytest.fixture()
def con(db_path: str):
    connection = open_store(db_path)
    try:
        yield connection
    finally:
        connection.close()
