"""
Concurrency and Atomicity Tests

These run against a file-backed SQLite store so that every worker thread gets
its own connection and the store's locking is what serializes writers.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session

from loyalty.engine import BalanceDelta
from loyalty.errors import InsufficientBalanceError, StoreUnavailableError
from loyalty.models import RegisterAccountRequest
from loyalty.service import LoyaltyService
from loyalty.store import LedgerStore, Redemption
from loyalty.tiers import TierTable


@pytest.fixture
def service(tmp_path):
    store = LedgerStore(f"sqlite:///{tmp_path / 'loyalty.db'}", timeout=30)
    yield LoyaltyService(store, TierTable())
    store.engine.dispose()


def register(service: LoyaltyService, email: str = "member@example.com") -> str:
    return service.register_account(RegisterAccountRequest(email=email)).id


class TestConcurrentMutations:
    """Tests that concurrent writers never lose updates."""

    def test_simultaneous_earns_serialize(self, service):
        """earn(10) and earn(20) started together end at 30."""
        user_id = register(service)
        barrier = threading.Barrier(2)

        def earn(amount):
            barrier.wait()
            return service.earn(user_id, amount)

        with ThreadPoolExecutor(max_workers=2) as pool:
            list(pool.map(earn, [10, 20]))

        balance = service.get_balance(user_id)
        assert balance.balance == 30
        assert balance.lifetime_points == 30
        assert service.get_history(user_id).total_count == 2

    def test_many_earns_accumulate(self, service):
        """Many small concurrent earns all land in the balance and the log."""
        user_id = register(service)

        def earn_many(_):
            for _ in range(10):
                service.earn(user_id, 1)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(earn_many, range(8)))

        assert service.get_balance(user_id).balance == 80
        audit = service.audit_account(user_id)
        assert audit.consistent
        assert audit.transaction_count == 80

    def test_concurrent_spends_never_overdraw(self, service):
        """Competing spends succeed only while the balance covers them."""
        user_id = register(service)
        service.earn(user_id, 100)

        def spend(_):
            try:
                service.spend(user_id, 10)
                return True
            except InsufficientBalanceError:
                return False

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(spend, range(20)))

        assert results.count(True) == 10
        balance = service.get_balance(user_id)
        assert balance.balance == 0
        assert balance.lifetime_points == 100
        assert service.audit_account(user_id).consistent

    def test_different_accounts_progress_independently(self, service):
        """Writers on different accounts each see only their own updates."""
        users = [register(service, f"user{i}@example.com") for i in range(4)]

        def earn_for(user_id):
            for _ in range(5):
                service.earn(user_id, 100)

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(earn_for, users))

        for user_id in users:
            balance = service.get_balance(user_id)
            assert balance.balance == 500
            assert balance.tier == "Silver"


class TestAtomicity:
    """Tests that failures leave no partial state."""

    def test_abandoned_transaction_rolls_back(self, service):
        """A caller giving up after apply_delta leaves neither balance nor log changed."""
        user_id = register(service)
        service.earn(user_id, 50)

        with pytest.raises(TimeoutError):
            with service.store.transaction() as session:
                service.engine.apply_delta(session, user_id, BalanceDelta.earn(500, "never lands"))
                raise TimeoutError("deadline exceeded")

        balance = service.get_balance(user_id)
        assert balance.balance == 50
        assert balance.lifetime_points == 50
        assert balance.tier == "Bronze"
        assert service.get_history(user_id).total_count == 1

    def test_store_failure_surfaces_unavailable(self, service, monkeypatch):
        """Driver errors become StoreUnavailableError and nothing is written."""
        user_id = register(service)

        def broken(*args, **kwargs):
            raise sa_exc.OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(service.store, "get_account", broken)
        with pytest.raises(StoreUnavailableError):
            service.earn(user_id, 10)
        monkeypatch.undo()

        assert service.get_balance(user_id).balance == 0
        assert service.get_history(user_id).total_count == 0

    def test_redemption_row_failure_rolls_back_debit(self, service, monkeypatch):
        """If the redemption row cannot be written the debit is undone too."""
        user_id = register(service)
        service.earn(user_id, 500)
        with service.store.transaction() as session:
            reward_id = service.store.add_reward(session, "Coupon", 100).id

        original_flush = Session.flush

        def failing_flush(session_self, *args, **kwargs):
            if any(isinstance(obj, Redemption) for obj in session_self.new):
                raise RuntimeError("write failed")
            return original_flush(session_self, *args, **kwargs)

        monkeypatch.setattr(Session, "flush", failing_flush)

        with pytest.raises(RuntimeError):
            service.redeem(user_id, reward_id)
        monkeypatch.undo()

        assert service.get_balance(user_id).balance == 500
        assert service.get_history(user_id).total_count == 1
        assert service.get_redemptions(user_id) == []


class TestReadsAlongsideWrites:
    """Tests that read-only work does not queue behind an open write."""

    def test_reads_run_while_write_is_open(self, tmp_path):
        """Reads of any account finish while another account's write is uncommitted."""
        # A short busy timeout turns any wait on the write lock into a failure.
        store = LedgerStore(f"sqlite:///{tmp_path / 'reads.db'}", timeout=1)
        service = LoyaltyService(store, TierTable())
        held = register(service, "held@example.com")
        other = register(service, "other@example.com")
        service.earn(other, 40)

        started = threading.Event()
        release = threading.Event()

        def hold_write():
            with store.transaction() as session:
                service.engine.apply_delta(session, held, BalanceDelta.earn(10, "held open"))
                started.set()
                release.wait(timeout=10)

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(hold_write)
            assert started.wait(timeout=10)
            try:
                other_balance = service.get_balance(other)
                held_balance = service.get_balance(held)
                history = service.get_history(held)
                distribution = service.get_tier_distribution()
            finally:
                release.set()
            future.result()

        assert other_balance.balance == 40
        assert held_balance.balance == 0
        assert history.total_count == 0
        assert distribution.total_accounts == 2
        assert service.get_balance(held).balance == 10
        store.engine.dispose()
