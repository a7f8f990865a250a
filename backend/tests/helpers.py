"""
Shared builders for reconciliation tests.

FakeRepository keeps rows in memory and implements the repository calls
the services and writer make, so runs can be exercised end to end without
a database.
"""

from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from config import Settings
from reconciliation.models import InvoiceRecord, TransactionMetadata, TransactionRecord
from reconciliation.services.repository import LeaseUnavailableError, LoadResult
from reconciliation.services.writer import BatchWriter, ReconciliationWriter


def make_settings(**overrides) -> Settings:
    values = {"DATABASE_URL": "postgresql+asyncpg://test:test@db/test", "ENVIRONMENT": "test"}
    values.update(overrides)
    return Settings(**values)


def make_transaction(
    id: str = "t1",
    source: str = "braintree-api-revenue",
    amount: Any = "100.00",
    day: date = date(2025, 3, 10),
    description: str = "",
    reconciled: bool = False,
    currency_code: str = "EUR",
    **metadata,
) -> TransactionRecord:
    return TransactionRecord(
        id=id,
        source=source,
        external_id=f"ext-{id}",
        date=day,
        amount=Decimal(str(amount)),
        currency_code=currency_code,
        description=description,
        reconciled=reconciled,
        metadata=TransactionMetadata.from_custom_data(metadata),
    )


def make_invoice(
    id: str = "i1",
    amount: Any = "100.00",
    day: Optional[date] = date(2025, 3, 10),
    reconciled: bool = False,
    **fields,
) -> InvoiceRecord:
    values = {
        "id": id,
        "invoice_number": f"INV-{id}",
        "total_amount": Decimal(str(amount)),
        "invoice_date": day,
        "reconciled": reconciled,
    }
    values.update(fields)
    return InvoiceRecord(**values)


def _merged_metadata(metadata: TransactionMetadata, patch: Mapping[str, Any]) -> TransactionMetadata:
    current = metadata.model_dump(exclude_none=True, exclude={"extensions"})
    return TransactionMetadata.from_custom_data({**current, **metadata.extensions, **patch})


class FakeRepository:
    """In-memory repository with the same compare-and-set rules as the SQL one."""

    def __init__(
        self,
        transactions: Iterable[TransactionRecord] = (),
        invoices: Iterable[InvoiceRecord] = (),
        lease_holder: Optional[str] = None,
    ):
        self.transactions: Dict[str, TransactionRecord] = {t.id: t for t in transactions}
        self.invoices: Dict[str, InvoiceRecord] = {i.id: i for i in invoices}
        self.lease_holder = lease_holder
        self.leases_taken: List[str] = []
        self.writes = 0
        self.fail_ids: set = set()

    # Reads

    async def load_transactions(self, sources: Sequence[str], reconciled: Optional[bool] = None):
        records = [
            t for t in self.transactions.values()
            if t.source in sources and (reconciled is None or t.reconciled == reconciled)
        ]
        return LoadResult(records=records)

    async def load_invoices(self, reconciled: Optional[bool] = None):
        records = [i for i in self.invoices.values() if reconciled is None or i.reconciled == reconciled]
        return LoadResult(records=records)

    # Writes

    def _check(self, transaction_id: str):
        self.writes += 1
        if transaction_id in self.fail_ids:
            raise RuntimeError(f"write rejected for {transaction_id}")

    async def apply_match(self, match, patch, reconciled_at) -> bool:
        self._check(match.transaction_id)
        invoice = self.invoices[match.invoice_id]
        txn = self.transactions[match.transaction_id]
        if invoice.reconciled or txn.reconciled:
            return False
        self.invoices[invoice.id] = invoice.model_copy(update={
            "reconciled": True,
            "status": "paid",
            "reconciled_with": match.transaction_ref,
        })
        self.transactions[txn.id] = txn.model_copy(update={
            "reconciled": True,
            "metadata": _merged_metadata(txn.metadata, patch),
        })
        return True

    async def merge_transaction_metadata(self, transaction_id, patch, mark_reconciled=False) -> bool:
        self._check(transaction_id)
        txn = self.transactions[transaction_id]
        if mark_reconciled and txn.reconciled:
            return False
        update = {"metadata": _merged_metadata(txn.metadata, patch)}
        if mark_reconciled:
            update["reconciled"] = True
        self.transactions[transaction_id] = txn.model_copy(update=update)
        return True

    async def correct_amount(self, transaction_id, amount, patch) -> bool:
        self._check(transaction_id)
        txn = self.transactions[transaction_id]
        self.transactions[transaction_id] = txn.model_copy(update={
            "amount": amount,
            "metadata": _merged_metadata(txn.metadata, patch),
        })
        return True

    async def reset_transaction(self, transaction_id, remove_keys) -> bool:
        self._check(transaction_id)
        txn = self.transactions[transaction_id]
        if not txn.reconciled:
            return False
        kept = {
            k: v for k, v in txn.metadata.model_dump(exclude_none=True, exclude={"extensions"}).items()
            if k not in remove_keys
        }
        self.transactions[transaction_id] = txn.model_copy(update={
            "reconciled": False,
            "metadata": TransactionMetadata.from_custom_data(kept),
        })
        return True

    # Lease

    @asynccontextmanager
    async def lease(self, holder: str, ttl_seconds: int, name: str = "reconciliation-writer"):
        if self.lease_holder and self.lease_holder != holder:
            raise LeaseUnavailableError(f"Lease '{name}' is held by another run")
        self.leases_taken.append(holder)
        yield


class FakeSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def make_writer(repository: FakeRepository, batch_size: int = 50, concurrency: int = 10) -> ReconciliationWriter:
    """Writer whose per-item repositories all resolve to the given fake."""
    return ReconciliationWriter(BatchWriter(
        FakeSession,
        batch_size=batch_size,
        concurrency=concurrency,
        repository_factory=lambda db: repository,
    ))
