"""Tests for the spending ledger."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from paywarden.ledger import DAY_SECONDS, RETENTION_SECONDS, PruneScheduler, SpendingLedger


NOW = 1_800_000_000
ALICE = "0xaaaa000000000000000000000000000000000001"
BOB = "0xbbbb000000000000000000000000000000000002"


@pytest.fixture
def ledger(tmp_path):
    return SpendingLedger(tmp_path / "spending.sqlite3")


class TestSpendingLedger:
    def test_window_totals(self, ledger):
        ledger.record(ALICE, 100, "tx-1", timestamp=NOW - 60)
        ledger.record(ALICE, 200, "tx-2", timestamp=NOW - 2 * DAY_SECONDS)
        ledger.record(ALICE, 400, "tx-3", timestamp=NOW - 10 * DAY_SECONDS)
        ledger.record(BOB, 800, "tx-4", timestamp=NOW - 60)

        alice = ledger.window_totals(now=NOW, recipient=ALICE)
        assert alice.daily == 100
        assert alice.weekly == 300
        assert alice.monthly == 700
        assert alice.total == 700

        everyone = ledger.window_totals(now=NOW)
        assert everyone.daily == 900
        assert everyone.total == 1500

    def test_window_boundary_is_exclusive(self, ledger):
        ledger.record(ALICE, 100, "tx-1", timestamp=NOW - DAY_SECONDS)
        assert ledger.window_totals(now=NOW, recipient=ALICE).daily == 0
        assert ledger.window_totals(now=NOW, recipient=ALICE).weekly == 100

    def test_recipient_is_normalized(self, ledger):
        ledger.record(ALICE.upper().replace("0X", "0x"), 100, "tx-1", timestamp=NOW)
        assert ledger.window_totals(now=NOW + 1, recipient=ALICE).daily == 100

    @pytest.mark.parametrize("amount", [0, -5])
    def test_rejects_non_positive_amounts(self, ledger, amount):
        with pytest.raises(ValueError, match="positive"):
            ledger.record(ALICE, amount, "tx-1")

    def test_rejects_missing_execution_id(self, ledger):
        with pytest.raises(ValueError, match="Execution identifier"):
            ledger.record(ALICE, 100, "")

    def test_prune_keeps_lifetime_totals(self, ledger):
        ledger.record(ALICE, 100, "old", timestamp=NOW - 40 * DAY_SECONDS)
        ledger.record(ALICE, 50, "new", timestamp=NOW - 60)

        removed = ledger.prune(now=NOW)
        assert removed == 1
        assert ledger.last_pruned == NOW
        assert [r.execution_id for r in ledger.history()] == ["new"]

        totals = ledger.window_totals(now=NOW, recipient=ALICE)
        assert totals.monthly == 50
        assert totals.total == 150

    def test_prune_keeps_records_inside_retention(self, ledger):
        ledger.record(ALICE, 100, "tx-1", timestamp=NOW - RETENTION_SECONDS + 60)
        assert ledger.prune(now=NOW) == 0

    def test_history_newest_first(self, ledger):
        ledger.record(ALICE, 1, "tx-1", timestamp=NOW - 30)
        ledger.record(BOB, 2, "tx-2", timestamp=NOW - 20)
        ledger.record(ALICE, 3, "tx-3", timestamp=NOW - 10)

        assert [r.execution_id for r in ledger.history()] == ["tx-3", "tx-2", "tx-1"]
        assert [r.execution_id for r in ledger.history(recipient=ALICE, limit=1)] == ["tx-3"]

    def test_summary(self, ledger):
        ledger.record(ALICE, 1_000_000, "tx-1", timestamp=NOW - 60)
        ledger.record(ALICE, 500_000, "tx-2", timestamp=NOW - 8 * DAY_SECONDS)

        summary = ledger.summary(recipient=ALICE, now=NOW)
        assert summary == {
            "recipient": ALICE,
            "daily": 1_000_000,
            "weekly": 1_000_000,
            "monthly": 1_500_000,
            "total": 1_500_000,
            "count": 2,
        }
        assert ledger.summary(now=NOW)["count"] == 2

    def test_clear(self, ledger):
        ledger.record(ALICE, 100, "tx-1", timestamp=NOW)
        ledger.clear()
        assert ledger.history() == []
        assert ledger.window_totals(now=NOW).total == 0

    def test_concurrent_records(self, ledger):
        def write(i):
            ledger.record(ALICE, 10, f"tx-{i}", timestamp=NOW)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(write, range(40)))

        assert ledger.window_totals(now=NOW + 1, recipient=ALICE).daily == 400
        assert ledger.summary(recipient=ALICE, now=NOW + 1)["count"] == 40


class TestPruneScheduler:
    def test_run_once_prunes(self, ledger):
        ledger.record(ALICE, 100, "ancient", timestamp=1_000)
        scheduler = PruneScheduler(ledger)
        assert scheduler.run_once() == 1

    def test_start_stop(self, ledger):
        ledger.record(ALICE, 100, "ancient", timestamp=1_000)
        with PruneScheduler(ledger, interval_seconds=60):
            pass
        assert ledger.history() == []
