import sqlite3
import threading
from pathlib import Path

from sqlstream import DatabaseConfig


def test_concurrent_provide_pool_single_instance(sqlite_database: Path) -> None:
    """Verify that multiple concurrent calls to provide_pool result in a single pool."""
    config = DatabaseConfig(connection_factory=lambda: sqlite3.connect(sqlite_database, check_same_thread=False))
    barrier = threading.Barrier(50)
    pools = []

    def get_pool() -> None:
        barrier.wait()
        pools.append(config.provide_pool())

    threads = [threading.Thread(target=get_pool) for _ in range(50)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    first_pool = pools[0]
    unique_pools = {id(p) for p in pools}

    config.close_pool()

    assert len(unique_pools) == 1, f"Race condition detected! {len(unique_pools)} unique pools created."
    assert all(p is first_pool for p in pools)


def test_sessions_share_bounded_pool(sqlite_database: Path) -> None:
    """Verify many threads streaming queries never exceed max_connections."""
    created = []
    lock = threading.Lock()

    def connect() -> sqlite3.Connection:
        connection = sqlite3.connect(sqlite_database, check_same_thread=False)
        with lock:
            created.append(connection)
        return connection

    config = DatabaseConfig(connection_factory=connect, pool_config={"max_connections": 2})
    totals = []
    errors = []

    def worker(offset: int) -> None:
        try:
            with config.provide_session() as session:
                for _ in range(10):
                    ids = [row["id"] for row in session.select("SELECT id FROM items WHERE id > ?", (offset,))]
                    totals.append(len(ids))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    pool = config.provide_pool()
    assert not errors
    assert len(totals) == 80
    assert sorted(set(totals)) == [25 - i for i in range(7, -1, -1)]
    assert len(created) <= 2
    assert pool.checked_out() == 0

    config.close_pool()
    assert pool.size() == 0
