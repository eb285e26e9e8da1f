"""Tests for the transaction coordinator's commit/abort behaviour."""

import asyncio

import pytest

from storefront.errors import InsufficientStock, TransactionTimeout
from storefront.transaction import TransactionCoordinator


class FakeContext:
    def __init__(self):
        self.calls = []

    async def begin(self):
        self.calls.append("begin")
        return "txn-1"

    async def commit(self, handle):
        self.calls.append(("commit", handle))

    async def abort(self, handle):
        self.calls.append(("abort", handle))


async def test_commits_and_returns_result():
    context = FakeContext()
    coordinator = TransactionCoordinator(context)

    async def work(txn):
        assert txn == "txn-1"
        return 42

    assert await coordinator.with_transaction(work) == 42
    assert context.calls == ["begin", ("commit", "txn-1")]


async def test_aborts_and_reraises_error_unchanged():
    context = FakeContext()
    coordinator = TransactionCoordinator(context)
    error = InsufficientStock("p1")

    async def work(txn):
        raise error

    with pytest.raises(InsufficientStock) as excinfo:
        await coordinator.with_transaction(work)

    assert excinfo.value is error
    assert context.calls == ["begin", ("abort", "txn-1")]


async def test_deadline_overrun_aborts_with_transaction_timeout():
    context = FakeContext()
    coordinator = TransactionCoordinator(context, timeout=0.01)

    async def slow(txn):
        await asyncio.sleep(1)

    with pytest.raises(TransactionTimeout):
        await coordinator.with_transaction(slow)

    assert context.calls == ["begin", ("abort", "txn-1")]


async def test_timeout_raised_by_work_is_not_reported_as_deadline():
    context = FakeContext()
    coordinator = TransactionCoordinator(context, timeout=5)

    async def work(txn):
        raise TimeoutError("upstream")

    with pytest.raises(TimeoutError) as excinfo:
        await coordinator.with_transaction(work)

    assert not isinstance(excinfo.value, TransactionTimeout)
    assert context.calls[-1] == ("abort", "txn-1")


async def test_zero_timeout_disables_deadline():
    coordinator = TransactionCoordinator(FakeContext(), timeout=0)
    assert coordinator.timeout is None


async def test_commit_failure_aborts_and_propagates():
    class FailingCommit(FakeContext):
        async def commit(self, handle):
            raise RuntimeError("connection lost")

    context = FailingCommit()
    coordinator = TransactionCoordinator(context)

    async def work(txn):
        return "done"

    with pytest.raises(RuntimeError, match="connection lost"):
        await coordinator.with_transaction(work)
    assert context.calls == ["begin", ("abort", "txn-1")]


async def test_abort_failure_does_not_mask_original_error(caplog):
    class FailingAbort(FakeContext):
        async def abort(self, handle):
            self.calls.append(("abort", handle))
            raise RuntimeError("connection reset during rollback")

    context = FailingAbort()
    coordinator = TransactionCoordinator(context)
    error = InsufficientStock("p1")

    async def work(txn):
        raise error

    with pytest.raises(InsufficientStock) as excinfo:
        await coordinator.with_transaction(work)

    assert excinfo.value is error
    assert context.calls == ["begin", ("abort", "txn-1")]
    assert "Transaction abort failed" in caplog.text


async def test_abort_failure_after_commit_error_keeps_commit_error():
    class Broken(FakeContext):
        async def commit(self, handle):
            raise RuntimeError("connection lost")

        async def abort(self, handle):
            raise RuntimeError("rollback failed")

    coordinator = TransactionCoordinator(Broken())

    async def work(txn):
        return "done"

    with pytest.raises(RuntimeError, match="connection lost"):
        await coordinator.with_transaction(work)
