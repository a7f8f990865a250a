"""
Reconciliation Repository

All SQL the engine issues lives here:
- Paginated reads of transaction and invoice rows (fatal on failure)
- Row -> model conversion (bad rows are skipped and counted)
- Atomic metadata merges and compare-and-set invoice claims
- The single-writer lease held by applying runs
"""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Generic, List, Mapping, Optional, Sequence, TypeVar

from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation.models import (
    InvoiceRecord,
    MatchResult,
    TransactionMetadata,
    TransactionRecord,
)
from reconciliation.source_registry import SourceRegistry, source_registry

logger = logging.getLogger(__name__)

T = TypeVar("T")

WRITER_LEASE = "reconciliation-writer"
MAX_REJECTED_SAMPLES = 20


class RepositoryError(Exception):
    """Reading from the backing store failed; the run cannot continue."""


class LeaseUnavailableError(Exception):
    """Another applying run holds the single-writer lease."""


@dataclass
class LoadResult(Generic[T]):
    """Rows that parsed, plus a tally of the ones that did not."""
    records: List[T] = field(default_factory=list)
    rejected: int = 0
    rejected_samples: List[Dict[str, str]] = field(default_factory=list)
    pages: int = 0

    def reject(self, row_id: Any, error: Exception):
        self.rejected += 1
        if len(self.rejected_samples) < MAX_REJECTED_SAMPLES:
            self.rejected_samples.append({"id": str(row_id), "error": str(error)[:200]})


def _json_object(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        value = json.loads(value) if value.strip() else {}
    if not isinstance(value, dict):
        raise ValueError("custom_data is not a JSON object")
    return value


def _json_param(patch: Mapping[str, Any]) -> str:
    return json.dumps(patch, default=str)


class ReconciliationRepository:
    """
    Data access for one database session.

    Concurrent writers must each use their own repository (and session);
    an AsyncSession is not safe to share between tasks.
    """

    def __init__(
        self,
        db: AsyncSession,
        registry: Optional[SourceRegistry] = None,
        page_size: int = 1000,
        max_pages: int = 500,
    ):
        self.db = db
        self.registry = registry or source_registry
        self.page_size = page_size
        self.max_pages = max_pages

    # ==================== READS ====================

    async def _paginate(self, sql: str, params: Dict[str, Any]) -> List[Mapping[str, Any]]:
        rows: List[Mapping[str, Any]] = []
        for page in range(self.max_pages):
            query = text(f"{sql} ORDER BY id LIMIT :limit OFFSET :offset")
            try:
                result = await self.db.execute(query, {
                    **params,
                    "limit": self.page_size,
                    "offset": page * self.page_size,
                })
            except SQLAlchemyError as e:
                logger.error(f"Paginated read failed on page {page}: {e}")
                raise RepositoryError(f"Read failed on page {page}: {e}") from e

            batch = result.mappings().all()
            rows.extend(batch)
            if len(batch) < self.page_size:
                return rows

        logger.warning(f"Paginated read stopped at max_pages={self.max_pages}")
        return rows

    async def load_transactions(
        self,
        sources: Sequence[str],
        reconciled: Optional[bool] = None,
    ) -> LoadResult[TransactionRecord]:
        """
        Load transaction rows for the given sources.

        Args:
            sources: Source identifiers to include
            reconciled: Filter on the reconciled flag; None loads both
        """
        result: LoadResult[TransactionRecord] = LoadResult()
        if not sources:
            return result

        conditions = ["source = ANY(:sources)"]
        params: Dict[str, Any] = {"sources": list(sources)}
        if reconciled is not None:
            conditions.append("reconciled = :reconciled")
            params["reconciled"] = reconciled

        rows = await self._paginate(f"""
            SELECT id, source, external_id, date, amount, currency_code,
                   description, reconciled, custom_data
            FROM public.transaction_records
            WHERE {' AND '.join(conditions)}
        """, params)

        for row in rows:
            try:
                result.records.append(self._row_to_transaction(row))
            except (ValidationError, ValueError, TypeError) as e:
                result.reject(row.get("id"), e)

        if result.rejected:
            logger.warning(f"Skipped {result.rejected} unparseable transaction rows")
        return result

    async def load_invoices(self, reconciled: Optional[bool] = None) -> LoadResult[InvoiceRecord]:
        """Load invoice rows, optionally filtered on the reconciled flag."""
        result: LoadResult[InvoiceRecord] = LoadResult()

        where = ""
        params: Dict[str, Any] = {}
        if reconciled is not None:
            where = "WHERE reconciled = :reconciled"
            params["reconciled"] = reconciled

        rows = await self._paginate(f"""
            SELECT id, invoice_number, customer_name, customer_email, order_id,
                   total_amount, currency_code, financial_account_code,
                   invoice_date, status, reconciled, reconciled_with
            FROM public.invoice_records
            {where}
        """, params)

        for row in rows:
            try:
                result.records.append(InvoiceRecord.model_validate(dict(row)))
            except (ValidationError, ValueError, TypeError) as e:
                result.reject(row.get("id"), e)

        if result.rejected:
            logger.warning(f"Skipped {result.rejected} unparseable invoice rows")
        return result

    def _row_to_transaction(self, row: Mapping[str, Any]) -> TransactionRecord:
        data = dict(row)
        metadata = TransactionMetadata.from_custom_data(
            _json_object(data.pop("custom_data", None)),
            self.registry.aliases_for(data.get("source", "")),
        )
        return TransactionRecord.model_validate({**data, "metadata": metadata})

    # ==================== WRITES ====================

    async def apply_match(self, match: MatchResult, patch: Mapping[str, Any], reconciled_at: datetime) -> bool:
        """
        Claim the invoice and mark the transaction, in one transaction.

        The invoice update only succeeds while the invoice is still open;
        when another run got there first nothing is written and False is
        returned.
        """
        claimed = await self.db.execute(text("""
            UPDATE public.invoice_records
            SET status = 'paid',
                reconciled = true,
                reconciled_at = :reconciled_at,
                reconciled_with = :reconciled_with,
                reconciliation_type = :reconciliation_type,
                payment_reference = :payment_reference,
                updated_at = NOW()
            WHERE id = :invoice_id AND reconciled = false
            RETURNING id
        """), {
            "invoice_id": match.invoice_id,
            "reconciled_at": reconciled_at,
            "reconciled_with": match.transaction_ref,
            "reconciliation_type": match.strategy.value,
            "payment_reference": match.transaction_ref.split(":", 1)[-1],
        })
        if claimed.fetchone() is None:
            await self.db.rollback()
            return False

        marked = await self.db.execute(text("""
            UPDATE public.transaction_records
            SET reconciled = true,
                custom_data = COALESCE(custom_data, '{}'::jsonb) || CAST(:patch AS jsonb),
                updated_at = NOW()
            WHERE id = :transaction_id AND reconciled = false
            RETURNING id
        """), {"transaction_id": match.transaction_id, "patch": _json_param(patch)})
        if marked.fetchone() is None:
            await self.db.rollback()
            return False

        await self.db.commit()
        return True

    async def merge_transaction_metadata(
        self,
        transaction_id: str,
        patch: Mapping[str, Any],
        mark_reconciled: bool = False,
    ) -> bool:
        """
        Merge keys into custom_data without touching other keys.

        With mark_reconciled the row is also flagged, but only if it is
        still unreconciled.
        """
        set_reconciled = "reconciled = true," if mark_reconciled else ""
        guard = "AND reconciled = false" if mark_reconciled else ""
        result = await self.db.execute(text(f"""
            UPDATE public.transaction_records
            SET {set_reconciled}
                custom_data = COALESCE(custom_data, '{{}}'::jsonb) || CAST(:patch AS jsonb),
                updated_at = NOW()
            WHERE id = :transaction_id {guard}
            RETURNING id
        """), {"transaction_id": transaction_id, "patch": _json_param(patch)})
        updated = result.fetchone() is not None
        await self.db.commit()
        return updated

    async def correct_amount(self, transaction_id: str, amount: Decimal, patch: Mapping[str, Any]) -> bool:
        """Set the amount in place, keeping the row and its links."""
        result = await self.db.execute(text("""
            UPDATE public.transaction_records
            SET amount = :amount,
                custom_data = COALESCE(custom_data, '{}'::jsonb) || CAST(:patch AS jsonb),
                updated_at = NOW()
            WHERE id = :transaction_id
            RETURNING id
        """), {"transaction_id": transaction_id, "amount": amount, "patch": _json_param(patch)})
        updated = result.fetchone() is not None
        await self.db.commit()
        return updated

    async def reset_transaction(self, transaction_id: str, remove_keys: Sequence[str]) -> bool:
        """Mark a row unreconciled again and drop the given metadata keys."""
        result = await self.db.execute(text("""
            UPDATE public.transaction_records
            SET reconciled = false,
                custom_data = COALESCE(custom_data, '{}'::jsonb) - CAST(:keys AS text[]),
                updated_at = NOW()
            WHERE id = :transaction_id AND reconciled = true
            RETURNING id
        """), {"transaction_id": transaction_id, "keys": list(remove_keys)})
        updated = result.fetchone() is not None
        await self.db.commit()
        return updated

    # ==================== LEASE ====================

    async def acquire_lease(self, holder: str, ttl_seconds: int, name: str = WRITER_LEASE) -> bool:
        """
        Take the lease if it is free, expired, or already ours.
        """
        now = datetime.now(timezone.utc)
        result = await self.db.execute(text("""
            INSERT INTO public.reconciliation_leases (name, holder, acquired_at, expires_at)
            VALUES (:name, :holder, :now, :expires_at)
            ON CONFLICT (name) DO UPDATE
            SET holder = EXCLUDED.holder,
                acquired_at = EXCLUDED.acquired_at,
                expires_at = EXCLUDED.expires_at
            WHERE public.reconciliation_leases.expires_at < :now
               OR public.reconciliation_leases.holder = EXCLUDED.holder
            RETURNING holder
        """), {
            "name": name,
            "holder": holder,
            "now": now,
            "expires_at": now + timedelta(seconds=ttl_seconds),
        })
        acquired = result.fetchone() is not None
        await self.db.commit()
        return acquired

    async def release_lease(self, holder: str, name: str = WRITER_LEASE):
        await self.db.execute(text("""
            DELETE FROM public.reconciliation_leases
            WHERE name = :name AND holder = :holder
        """), {"name": name, "holder": holder})
        await self.db.commit()

    @asynccontextmanager
    async def lease(self, holder: str, ttl_seconds: int, name: str = WRITER_LEASE):
        """
        Hold the single-writer lease for the duration of the block.

        Raises:
            LeaseUnavailableError: another run holds it
        """
        if not await self.acquire_lease(holder, ttl_seconds, name):
            raise LeaseUnavailableError(f"Lease '{name}' is held by another run")
        logger.info(f"Lease '{name}' acquired by {holder}")
        try:
            yield
        finally:
            await self.release_lease(holder, name)
            logger.info(f"Lease '{name}' released by {holder}")
