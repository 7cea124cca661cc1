import pytest

from armiarma.db.batch import MAX_RETRIES, BatchPersistError, QueryBatch


class FakeTx:
    def __init__(self, pool):
        self.pool = pool
        self.executed = []
        self.committed = False
        self.rolled_back = False

    def execute(self, query, args):
        if self.pool.failures_left > 0 and query == self.pool.failing_query:
            self.pool.failures_left -= 1
            raise RuntimeError("query failed")
        self.executed.append((query, tuple(args)))

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True


class FakePool:
    def __init__(self, failing_query=None, failures=0):
        self.failing_query = failing_query
        self.failures_left = failures
        self.transactions = []

    def begin(self):
        tx = FakeTx(self)
        self.transactions.append(tx)
        return tx


def test_empty_batch_does_not_open_transaction():
    pool = FakePool()
    batch = QueryBatch(pool, 4)
    batch.persist_batch()
    assert pool.transactions == []
    assert len(batch) == 0


def test_queries_run_in_order_and_commit():
    pool = FakePool()
    batch = QueryBatch(pool, 4)
    batch.add_query("q1", 1, "a")
    batch.add_query("q2")
    assert len(batch) == 2
    batch.persist_batch()
    assert len(pool.transactions) == 1
    tx = pool.transactions[0]
    assert tx.executed == [("q1", (1, "a")), ("q2", ())]
    assert tx.committed
    assert len(batch) == 0


def test_ready_to_persist_at_size():
    batch = QueryBatch(FakePool(), 2)
    batch.add_query("q1")
    assert not batch.is_ready_to_persist()
    batch.add_query("q2")
    assert batch.is_ready_to_persist()


def test_retry_then_success():
    pool = FakePool(failing_query="bad", failures=1)
    batch = QueryBatch(pool, 4)
    batch.add_query("bad")
    batch.persist_batch()
    assert len(pool.transactions) == 2
    assert pool.transactions[0].rolled_back
    assert not pool.transactions[0].committed
    assert pool.transactions[1].committed


def test_all_retries_fail_raises_and_clears():
    pool = FakePool(failing_query="bad", failures=MAX_RETRIES + 5)
    batch = QueryBatch(pool, 4)
    batch.add_query("ok")
    batch.add_query("bad")
    with pytest.raises(BatchPersistError):
        batch.persist_batch()
    assert len(pool.transactions) == MAX_RETRIES + 1
    assert all(tx.rolled_back and not tx.committed for tx in pool.transactions)
    assert len(batch) == 0


def test_error_chains_original_cause():
    pool = FakePool(failing_query="bad", failures=MAX_RETRIES + 1)
    batch = QueryBatch(pool, 1)
    batch.add_query("bad")
    with pytest.raises(BatchPersistError) as info:
        batch.persist_batch()
    assert isinstance(info.value.__cause__, RuntimeError)