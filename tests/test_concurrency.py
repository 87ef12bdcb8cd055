"""
Concurrency tests for allocation, matching and payouts.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from tip_escrow.core.locks import KeyedLock
from tip_escrow.storage.models import VerifiedArtist

from conftest import make_tip

ALICE = VerifiedArtist("alice")
BOB = VerifiedArtist("bob")


class TestKeyedLock:
    """Test the per-key lock registry."""

    def test_entries_released_after_use(self):
        locks = KeyedLock()
        with locks.hold("a", "b"):
            assert len(locks) == 2
        assert len(locks) == 0

    def test_interrupted_acquire_releases_entries(self, monkeypatch):
        locks = KeyedLock()

        class InterruptedLock:
            def acquire(self):
                raise RuntimeError("interrupted")

            def release(self):
                raise AssertionError("never acquired")

        checkout = locks._checkout

        def checkout_then_interrupt(key):
            entry = checkout(key)
            if key == "b":
                entry.lock = InterruptedLock()
            return entry

        monkeypatch.setattr(locks, "_checkout", checkout_then_interrupt)
        with pytest.raises(RuntimeError, match="interrupted"):
            with locks.hold("a", "b"):
                pass

        assert len(locks) == 0
        with locks.hold("a"):
            assert len(locks) == 1

    def test_duplicate_keys_do_not_deadlock(self):
        locks = KeyedLock()
        with locks.hold("a", "a"):
            pass

    def test_same_key_serialised(self):
        locks = KeyedLock()
        inside = []
        overlaps = []

        def worker():
            with locks.hold("artist"):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(1)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []

    def test_different_keys_independent(self):
        locks = KeyedLock()
        entered = threading.Event()

        with locks.hold("a"):
            def other():
                with locks.hold("b"):
                    entered.set()

            t = threading.Thread(target=other)
            t.start()
            assert entered.wait(timeout=5)
            t.join()


class TestConcurrentLedger:
    """Test ledger invariants under concurrent callers."""

    def test_concurrent_tips_all_credited(self, service):
        service.register_media("duet", "Alice & Bob", [(ALICE, 1), (BOB, 1)])

        tips = [make_tip(f"tip-{i}", "duet", 100) for i in range(40)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(service.allocate, tips))

        # 100 pence -> 70 pool -> 35 each
        assert service.ledger.get_balance("alice") == 40 * 35
        assert service.ledger.get_balance("bob") == 40 * 35
        assert service.stats().platform_fee_total == 40 * 30
        assert service.audit().ok

    def test_concurrent_redelivery_allocates_once(self, service):
        service.register_media("solo", "Alice", [(ALICE, 1)])
        tip = make_tip("tip-1", "solo", 1000)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: service.allocate(tip), range(16)))

        assert sum(1 for r in results if not r.duplicate) == 1
        assert service.ledger.get_balance("alice") == 700
        assert len({r.records[0].allocation_id for r in results}) == 1

    def test_concurrent_processing_pays_once(self, service):
        service.register_media("solo", "Alice", [(ALICE, 1)])
        service.allocate(make_tip("tip-1", "solo", 4715))
        request = service.request_payout("alice")

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: service.process_payout(request.request_id), range(8)))

        assert all(r.amount_paid == 3300 for r in results)
        account = service.ledger.get_account("alice")
        assert account.balance == 0
        assert account.payouts_completed == 1

    def test_concurrent_matching_moves_each_record_once(self, service):
        service.register_media("band", "The Band", [])
        for i in range(10):
            service.allocate(make_tip(f"tip-{i}", "band", 1000))

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: service.match("band-id", "The Band"), range(6)))

        assert sum(r.matched_total for r in results) == 7000
        assert service.ledger.get_balance("band-id") == 7000
        assert service.stats().unclaimed_total == 0

    def test_tips_during_payout_are_not_lost(self, service):
        service.register_media("solo", "Alice", [(ALICE, 1)])
        service.allocate(make_tip("seed", "solo", 4715))
        request = service.request_payout("alice")

        def tip_worker(i):
            service.allocate(make_tip(f"tip-{i}", "solo", 100))

        with ThreadPoolExecutor(max_workers=6) as pool:
            futures = [pool.submit(tip_worker, i) for i in range(20)]
            payout = pool.submit(service.process_payout, request.request_id)
            for future in futures:
                future.result()
            paid = payout.result().amount_paid

        account = service.ledger.get_account("alice")
        assert account.total_escrow_earned == 3300 + 20 * 70
        assert account.balance + paid == account.total_escrow_earned
        assert service.audit().ok
