"""
Reconciliation Writer

Applies engine decisions to the database:
- Chunks of WRITE_BATCH_SIZE items, bounded by a concurrency semaphore
- Every item runs in its own session; one failure never aborts the batch
- Dry-run computes the same summary and issues zero writes
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from reconciliation.ledger_codes import LedgerCodeAssignment
from reconciliation.matching_rules.disbursement_rules import DisbursementMatch
from reconciliation.models import MatchResult
from reconciliation.services.repository import ReconciliationRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ERROR_SAMPLES = 20


@dataclass
class WriteSummary:
    """Per-run write statistics; identical shape for dry runs."""
    attempted: int = 0
    written: int = 0
    conflicts: int = 0
    errors: int = 0
    error_samples: List[Dict[str, str]] = field(default_factory=list)
    dry_run: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "written": self.written,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "error_samples": list(self.error_samples),
            "dry_run": self.dry_run,
        }


def build_match_patch(match: MatchResult, reconciled_at: datetime) -> Dict[str, Any]:
    """Provenance merged into the transaction's metadata."""
    patch: Dict[str, Any] = {
        "matched_invoice_id": match.invoice_id,
        "matched_invoice_number": match.invoice_number,
        "match_type": match.strategy.value,
        "confidence": match.confidence,
        "match_reasons": list(match.reasons),
        "reconciled_at": reconciled_at.isoformat(),
        "reconciled_with": f"invoice:{match.invoice_number or match.invoice_id}",
    }
    if match.financial_account_code:
        patch["matched_invoice_fac"] = match.financial_account_code
    return patch


class BatchWriter:
    """
    Generic chunked executor.

    Args:
        session_factory: async_sessionmaker producing one session per item
        batch_size: Items per chunk
        concurrency: Maximum items in flight
        repository_factory: Builds a repository around a session
    """

    def __init__(
        self,
        session_factory,
        batch_size: int = 50,
        concurrency: int = 10,
        repository_factory: Callable[[Any], ReconciliationRepository] = ReconciliationRepository,
    ):
        self.session_factory = session_factory
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)
        self.repository_factory = repository_factory

    async def run(
        self,
        items: Sequence[T],
        operation: Callable[[ReconciliationRepository, T], Awaitable[bool]],
        item_id: Callable[[T], str],
        dry_run: bool,
        label: str = "write",
    ) -> WriteSummary:
        """
        Execute operation for every item.

        The operation returns True when a row changed and False when it was
        skipped (already reconciled by someone else); exceptions are counted
        as errors.
        """
        summary = WriteSummary(attempted=len(items), dry_run=dry_run)
        if dry_run:
            logger.info(f"[dry-run] {label}: {len(items)} items, no writes issued")
            return summary
        if not items:
            return summary

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(item: T) -> bool:
            async with semaphore:
                async with self.session_factory() as db:
                    return await operation(self.repository_factory(db), item)

        for i in range(0, len(items), self.batch_size):
            batch = items[i:i + self.batch_size]
            results = await asyncio.gather(*[_one(item) for item in batch], return_exceptions=True)

            for item, result in zip(batch, results):
                if isinstance(result, BaseException):
                    summary.errors += 1
                    logger.error(f"{label} failed for {item_id(item)}: {result}")
                    if len(summary.error_samples) < MAX_ERROR_SAMPLES:
                        summary.error_samples.append({"id": item_id(item), "error": str(result)[:200]})
                elif result:
                    summary.written += 1
                else:
                    summary.conflicts += 1

            logger.info(
                f"{label}: batch {i // self.batch_size + 1} done "
                f"({summary.written} written, {summary.conflicts} skipped, {summary.errors} errors)"
            )

        return summary


class ReconciliationWriter:
    """Typed write operations on top of the batch executor."""

    def __init__(self, batch_writer: BatchWriter):
        self.batch_writer = batch_writer

    async def apply_matches(
        self,
        matches: Sequence[MatchResult],
        dry_run: bool,
        now: Optional[datetime] = None,
    ) -> WriteSummary:
        """Reconcile both sides of every match."""
        reconciled_at = now or datetime.now(timezone.utc)

        async def _apply(repo: ReconciliationRepository, match: MatchResult) -> bool:
            return await repo.apply_match(match, build_match_patch(match, reconciled_at), reconciled_at)

        return await self.batch_writer.run(
            matches, _apply, lambda m: m.transaction_id, dry_run, label="apply_matches"
        )

    async def apply_ledger_codes(
        self,
        assignments: Sequence[LedgerCodeAssignment],
        dry_run: bool,
    ) -> WriteSummary:
        async def _apply(repo: ReconciliationRepository, assignment: LedgerCodeAssignment) -> bool:
            return await repo.merge_transaction_metadata(assignment.transaction_id, assignment.to_patch())

        return await self.batch_writer.run(
            assignments, _apply, lambda a: a.transaction_id, dry_run, label="apply_ledger_codes"
        )

    async def apply_disbursements(
        self,
        matches: Sequence[DisbursementMatch],
        dry_run: bool,
        now: Optional[datetime] = None,
    ) -> WriteSummary:
        matched_at = now or datetime.now(timezone.utc)

        async def _apply(repo: ReconciliationRepository, match: DisbursementMatch) -> bool:
            return await repo.merge_transaction_metadata(
                match.bank_transaction_id, match.to_patch(matched_at), mark_reconciled=True
            )

        return await self.batch_writer.run(
            matches, _apply, lambda m: m.bank_transaction_id, dry_run, label="apply_disbursements"
        )

    async def apply_corrections(self, corrections: Sequence, dry_run: bool, now: Optional[datetime] = None) -> WriteSummary:
        corrected_at = now or datetime.now(timezone.utc)

        async def _apply(repo: ReconciliationRepository, correction) -> bool:
            return await repo.correct_amount(
                correction.transaction_id, correction.expected_amount, correction.to_patch(corrected_at)
            )

        return await self.batch_writer.run(
            corrections, _apply, lambda c: c.transaction_id, dry_run, label="apply_corrections"
        )

    async def reset_transactions(
        self,
        transaction_ids: Sequence[str],
        remove_keys: Sequence[str],
        dry_run: bool,
    ) -> WriteSummary:
        async def _apply(repo: ReconciliationRepository, transaction_id: str) -> bool:
            return await repo.reset_transaction(transaction_id, remove_keys)

        return await self.batch_writer.run(
            transaction_ids, _apply, lambda t: t, dry_run, label="reset_transactions"
        )


def build_writer(session_factory, settings) -> ReconciliationWriter:
    return ReconciliationWriter(BatchWriter(
        session_factory,
        batch_size=settings.WRITE_BATCH_SIZE,
        concurrency=settings.WRITE_CONCURRENCY,
    ))


async def write_under_lease(
    repository: ReconciliationRepository,
    holder: str,
    ttl_seconds: int,
    dry_run: bool,
    items: Sequence,
    apply: Callable[[bool], Awaitable[WriteSummary]],
) -> WriteSummary:
    """
    Run apply(dry_run) while holding the single-writer lease.

    Dry runs and empty item lists never touch the lease.

    Raises:
        LeaseUnavailableError: another applying run holds the lease
    """
    if dry_run or not items:
        return await apply(dry_run)
    async with repository.lease(holder, ttl_seconds):
        return await apply(False)
