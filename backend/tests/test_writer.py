"""
Unit Tests for the reconciliation writer and repository SQL paths

Run with: pytest tests/test_writer.py -v
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from reconciliation.models import MatchResult, MatchStrategy
from reconciliation.services.repository import (
    LeaseUnavailableError,
    ReconciliationRepository,
    RepositoryError,
)
from reconciliation.services.writer import write_under_lease
from helpers import FakeRepository, make_invoice, make_transaction, make_writer
from sqlalchemy.exc import OperationalError

NOW = datetime(2025, 3, 11, 8, 0, tzinfo=timezone.utc)


def order_match(txn_id="t1", invoice_id="i1"):
    return MatchResult(
        transaction_id=txn_id,
        invoice_id=invoice_id,
        strategy=MatchStrategy.ORDER_ID,
        confidence=100,
        reasons=["order_id=abc1234"],
        transaction_ref=f"braintree-api-revenue:ext-{txn_id}",
        invoice_number=f"INV-{invoice_id}",
        amount=Decimal("250.00"),
        invoice_amount=Decimal("250.00"),
    )


class TestBatchWriter:

    @pytest.fixture
    def repo(self):
        return FakeRepository(
            [make_transaction(f"t{n}", amount="250.00") for n in range(5)],
            [make_invoice(f"i{n}", "250.00") for n in range(5)],
        )

    @pytest.mark.asyncio
    async def test_dry_run_issues_zero_writes(self, repo):
        matches = [order_match(f"t{n}", f"i{n}") for n in range(5)]
        summary = await make_writer(repo).apply_matches(matches, dry_run=True)

        assert repo.writes == 0
        assert summary.dry_run is True
        assert summary.attempted == 5
        assert summary.written == 0
        assert not any(t.reconciled for t in repo.transactions.values())

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_batch(self, repo):
        repo.fail_ids = {"t2"}
        matches = [order_match(f"t{n}", f"i{n}") for n in range(5)]

        summary = await make_writer(repo, batch_size=2, concurrency=2).apply_matches(matches, dry_run=False)

        assert summary.written == 4
        assert summary.errors == 1
        assert summary.error_samples[0]["id"] == "t2"
        assert "write rejected" in summary.error_samples[0]["error"]
        assert repo.transactions["t4"].reconciled is True
        assert repo.transactions["t2"].reconciled is False

    @pytest.mark.asyncio
    async def test_lost_race_counts_as_conflict(self, repo):
        repo.invoices["i0"] = repo.invoices["i0"].model_copy(update={"reconciled": True})
        summary = await make_writer(repo).apply_matches([order_match("t0", "i0")], dry_run=False)

        assert summary.written == 0
        assert summary.conflicts == 1
        assert repo.transactions["t0"].reconciled is False

    @pytest.mark.asyncio
    async def test_reset_transactions(self):
        repo = FakeRepository([
            make_transaction("b1", source="bankinter-eur", reconciled=True,
                             payment_source="stripe-eur", match_type="disbursement"),
        ])
        summary = await make_writer(repo).reset_transactions(["b1"], ["payment_source", "match_type"], dry_run=False)

        assert summary.written == 1
        assert repo.transactions["b1"].reconciled is False
        assert repo.transactions["b1"].metadata.payment_source is None


class TestWriteUnderLease:

    @pytest.mark.asyncio
    async def test_dry_run_skips_lease(self):
        repo = FakeRepository(lease_holder="someone-else")
        apply = AsyncMock(return_value="summary")

        result = await write_under_lease(repo, "run-1", 60, True, ["x"], apply)

        assert result == "summary"
        apply.assert_awaited_once_with(True)
        assert repo.leases_taken == []

    @pytest.mark.asyncio
    async def test_held_lease_blocks_apply(self):
        repo = FakeRepository(lease_holder="someone-else")
        apply = AsyncMock()

        with pytest.raises(LeaseUnavailableError):
            await write_under_lease(repo, "run-1", 60, False, ["x"], apply)
        apply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_apply_takes_lease(self):
        repo = FakeRepository()
        apply = AsyncMock(return_value="summary")

        await write_under_lease(repo, "run-1", 60, False, ["x"], apply)

        apply.assert_awaited_once_with(False)
        assert repo.leases_taken == ["run-1"]


class TestRepositorySql:
    """Repository behaviour against a mocked session."""

    @pytest.fixture
    def mock_db(self):
        db = AsyncMock()
        db.execute = AsyncMock()
        db.commit = AsyncMock()
        db.rollback = AsyncMock()
        return db

    @pytest.fixture
    def repository(self, mock_db):
        return ReconciliationRepository(mock_db, page_size=2, max_pages=10)

    @staticmethod
    def page(rows):
        result = MagicMock()
        result.mappings.return_value.all.return_value = rows
        return result

    @pytest.mark.asyncio
    async def test_pages_until_short_page(self, repository, mock_db):
        row = {
            "id": "t1", "source": "stripe-eur", "external_id": "ch_1", "date": "2025-03-10",
            "amount": Decimal("10.00"), "currency_code": "EUR", "description": None,
            "reconciled": False, "custom_data": {"payment_intent": "pi_1", "order_id": "A-1"},
        }
        mock_db.execute.side_effect = [
            self.page([row, {**row, "id": "t2"}]),
            self.page([{**row, "id": "t3", "amount": None}]),
        ]

        result = await repository.load_transactions(["stripe-eur"], reconciled=False)

        assert [t.id for t in result.records] == ["t1", "t2"]
        assert result.rejected == 1
        assert result.records[0].metadata.transaction_id == "pi_1"
        assert mock_db.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_read_failure_is_fatal(self, repository, mock_db):
        mock_db.execute.side_effect = OperationalError("SELECT", {}, Exception("connection refused"))

        with pytest.raises(RepositoryError):
            await repository.load_invoices()

    @pytest.mark.asyncio
    async def test_apply_match_rolls_back_when_invoice_taken(self, repository, mock_db):
        taken = MagicMock()
        taken.fetchone.return_value = None
        mock_db.execute.return_value = taken

        assert await repository.apply_match(order_match(), {"match_type": "order_id"}, NOW) is False
        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_apply_match_commits_both_updates(self, repository, mock_db):
        updated = MagicMock()
        updated.fetchone.return_value = ("i1",)
        mock_db.execute.return_value = updated

        assert await repository.apply_match(order_match(), {"match_type": "order_id"}, NOW) is True
        assert mock_db.execute.await_count == 2
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lease_context_raises_when_held(self, repository, mock_db):
        held = MagicMock()
        held.fetchone.return_value = None
        mock_db.execute.return_value = held

        with pytest.raises(LeaseUnavailableError):
            async with repository.lease("run-1", 60):
                pass


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
