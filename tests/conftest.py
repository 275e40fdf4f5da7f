from __future__ import annotations

import pytest

from auction_closer.store import SQLiteStore


@pytest.fixture
def store(tmp_path) -> SQLiteStore:
    sqlite_store = SQLiteStore(str(tmp_path / "auction.sqlite"))
    sqlite_store.init_db()
    return sqlite_store
