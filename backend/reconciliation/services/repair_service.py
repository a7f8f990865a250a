"""
Repair Service

Fixes contamination left by earlier automatic passes.

Correction pass:
- Parse the authoritative ledger extract (`;`-separated, locale numbers)
- Key every row by (account code, date, description prefix)
- Compare persisted ledger rows against the expected amounts
- Classify mismatches and correct amounts in place (rows are never deleted)

False-positive sweep:
- Reconciled bank inflows whose disbursement date is too far from the bank
  date are reset to unreconciled and lose their match provenance
"""

import csv
import re
import uuid
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from reconciliation.models import CorrectionCategory, MatchStrategy, TransactionRecord
from reconciliation.normalisation import (
    day_diff,
    normalize_description_prefix,
    parse_day_first_date,
    parse_locale_number,
)
from reconciliation.services.reconciliation_service import (
    ReconciliationAuditEvent,
    log_reconciliation_event,
)
from reconciliation.services.repository import ReconciliationRepository
from reconciliation.services.writer import (
    ReconciliationWriter,
    WriteSummary,
    build_writer,
    write_under_lease,
)
from reconciliation.source_registry import SourceRegistry, source_registry

logger = logging.getLogger(__name__)

ACCOUNT_CODE_PATTERN = re.compile(r"(\d+\.\d+(?:\.\d+)?)")
MAX_REJECTED_SAMPLES = 20

# Match provenance removed when a false positive is reset
SWEEP_REMOVED_KEYS = (
    "reconciled_at",
    "reconciled_with",
    "payment_source",
    "disbursement_date",
    "transaction_ids",
    "match_type",
    "confidence",
    "match_reasons",
    "matched_invoice_id",
    "matched_invoice_number",
)

RepairKey = Tuple[str, date, str]


# ==================== EXTRACT PARSING ====================

@dataclass
class ExtractLayout:
    """Column positions of the accounting export."""
    delimiter: str = ";"
    group_column: int = 0
    subgroup_column: int = 1
    amount_column: int = 2
    date_column: int = 4
    description_column: int = 6
    skip_groups: Sequence[str] = ("Budget", "Balance Adjustment")
    has_header: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExtractLayout":
        return cls(
            delimiter=settings.REPAIR_DELIMITER,
            skip_groups=tuple(settings.repair_skip_groups),
        )


@dataclass
class ExtractRow:
    line: int
    account_code: str
    date: date
    description: str
    amount: Decimal


@dataclass
class LedgerExtract:
    rows: List[ExtractRow] = field(default_factory=list)
    skipped: int = 0
    rejected: int = 0
    rejected_samples: List[Dict[str, Any]] = field(default_factory=list)

    def reject(self, line: int, error: Exception):
        self.rejected += 1
        if len(self.rejected_samples) < MAX_REJECTED_SAMPLES:
            self.rejected_samples.append({"line": line, "error": str(error)[:200]})


def parse_ledger_extract(lines: Iterable[str], layout: Optional[ExtractLayout] = None) -> LedgerExtract:
    """
    Parse extract lines into rows.

    Rows from skipped groups, or without an account code in the subgroup,
    are skipped. Rows with an unreadable date or amount are rejected and
    counted; neither stops the parse.
    """
    layout = layout or ExtractLayout()
    extract = LedgerExtract()
    needed = max(
        layout.group_column, layout.subgroup_column, layout.amount_column,
        layout.date_column, layout.description_column,
    )

    reader = csv.reader((line for line in lines if line.strip()), delimiter=layout.delimiter)
    for number, cols in enumerate(reader, start=1):
        if number == 1 and layout.has_header:
            continue
        if len(cols) <= needed:
            cols = cols + [""] * (needed + 1 - len(cols))

        group = cols[layout.group_column].strip()
        if group in layout.skip_groups:
            extract.skipped += 1
            continue

        code = ACCOUNT_CODE_PATTERN.search(cols[layout.subgroup_column])
        if not code:
            extract.skipped += 1
            continue

        try:
            row = ExtractRow(
                line=number,
                account_code=code.group(1),
                date=parse_day_first_date(cols[layout.date_column]),
                description=cols[layout.description_column].strip(),
                amount=parse_locale_number(cols[layout.amount_column]),
            )
        except ValueError as e:
            extract.reject(number, e)
            continue
        extract.rows.append(row)

    logger.info(
        f"Parsed ledger extract: {len(extract.rows)} rows, "
        f"{extract.skipped} skipped, {extract.rejected} rejected"
    )
    return extract


def load_ledger_extract(path: str, layout: Optional[ExtractLayout] = None) -> LedgerExtract:
    """Read and parse an extract file (UTF-8, BOM tolerated)."""
    with Path(path).open("r", encoding="utf-8-sig", newline="") as f:
        return parse_ledger_extract(f, layout)


def repair_key(account_code: str, day: date, description: Optional[str], prefix_length: int = 25) -> RepairKey:
    return (account_code, day, normalize_description_prefix(description, prefix_length))


def build_expected_map(rows: Iterable[ExtractRow], prefix_length: int = 25) -> Dict[RepairKey, List[Decimal]]:
    """Expected amounts per key, in extract order."""
    expected: Dict[RepairKey, List[Decimal]] = {}
    for row in rows:
        key = repair_key(row.account_code, row.date, row.description, prefix_length)
        expected.setdefault(key, []).append(row.amount)
    return expected


# ==================== COMPARISON ====================

def classify_mismatch(current: Decimal, expected: Decimal) -> Optional[CorrectionCategory]:
    """Category of a current/expected pair, or None when they agree."""
    if current == expected:
        return None
    if expected == 0:
        return CorrectionCategory.PHANTOM_NEGATIVE if current < 0 else CorrectionCategory.PHANTOM_POSITIVE
    if current == 0:
        return CorrectionCategory.MISSING_VALUE
    return CorrectionCategory.WRONG_VALUE


@dataclass
class Correction:
    transaction_id: str
    account_code: str
    date: date
    description: str
    current_amount: Decimal
    expected_amount: Decimal
    category: CorrectionCategory

    @property
    def impact(self) -> Decimal:
        return self.expected_amount - self.current_amount

    def to_patch(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            "corrected_at": (now or datetime.now(timezone.utc)).isoformat(),
            "corrected_from": str(self.current_amount),
            "correction_category": self.category.value,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "account_code": self.account_code,
            "date": self.date.isoformat(),
            "description": self.description,
            "current_amount": str(self.current_amount),
            "expected_amount": str(self.expected_amount),
            "category": self.category.value,
        }


@dataclass
class Comparison:
    corrections: List[Correction] = field(default_factory=list)
    in_agreement: int = 0
    uncoded_records: int = 0
    records_without_extract_row: int = 0
    extract_rows_without_record: int = 0


def compare_to_extract(
    records: Iterable[TransactionRecord],
    expected: Dict[RepairKey, List[Decimal]],
    prefix_length: int = 25,
) -> Comparison:
    """
    Pair persisted rows with extract rows sharing a key.

    Within a key, rows whose amount already equals an expected amount are
    paired off first; the rest pair up in load order and every pair that
    disagrees becomes a correction.
    """
    comparison = Comparison()
    grouped: Dict[RepairKey, List[TransactionRecord]] = {}
    for record in records:
        code = record.metadata.ledger_code
        if not code:
            comparison.uncoded_records += 1
            continue
        grouped.setdefault(repair_key(code, record.date, record.description, prefix_length), []).append(record)

    for key, rows in grouped.items():
        amounts = list(expected.get(key, ()))
        if not amounts:
            comparison.records_without_extract_row += len(rows)
            continue

        pending: List[TransactionRecord] = []
        for row in rows:
            if row.amount in amounts:
                amounts.remove(row.amount)
                comparison.in_agreement += 1
            else:
                pending.append(row)

        for row, amount in zip(pending, amounts):
            category = classify_mismatch(row.amount, amount)
            if category is None:
                comparison.in_agreement += 1
                continue
            comparison.corrections.append(Correction(
                transaction_id=row.id,
                account_code=key[0],
                date=row.date,
                description=row.description,
                current_amount=row.amount,
                expected_amount=amount,
                category=category,
            ))

        comparison.records_without_extract_row += max(0, len(pending) - len(amounts))
        comparison.extract_rows_without_record += max(0, len(amounts) - len(pending))

    comparison.extract_rows_without_record += sum(
        len(amounts) for key, amounts in expected.items() if key not in grouped
    )
    return comparison


# ==================== REPORTS ====================

@dataclass
class RepairReport:
    run_id: str
    dry_run: bool
    sources: List[str]
    extract_rows: int
    extract_rejected: int
    records_loaded: int
    comparison: Comparison
    write: WriteSummary

    @property
    def by_category(self) -> Dict[str, int]:
        return dict(Counter(c.category.value for c in self.comparison.corrections))

    @property
    def impact_by_account(self) -> Dict[str, Dict[str, Any]]:
        impact: Dict[str, Dict[str, Any]] = {}
        for c in self.comparison.corrections:
            entry = impact.setdefault(c.account_code, {"count": 0, "impact": Decimal("0")})
            entry["count"] += 1
            entry["impact"] += c.impact
        return {
            code: {"count": v["count"], "impact": str(v["impact"])}
            for code, v in sorted(impact.items())
        }

    def to_dict(self, sample_size: int = 15) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "sources": list(self.sources),
            "extract_rows": self.extract_rows,
            "extract_rejected": self.extract_rejected,
            "records_loaded": self.records_loaded,
            "in_agreement": self.comparison.in_agreement,
            "uncoded_records": self.comparison.uncoded_records,
            "records_without_extract_row": self.comparison.records_without_extract_row,
            "extract_rows_without_record": self.comparison.extract_rows_without_record,
            "corrections": len(self.comparison.corrections),
            "by_category": self.by_category,
            "impact_by_account": self.impact_by_account,
            "write": self.write.to_dict(),
            "sample": [c.to_dict() for c in self.comparison.corrections[:sample_size]],
        }


@dataclass
class SweepCandidate:
    transaction_id: str
    reference: str
    amount: Decimal
    bank_date: date
    disbursement_date: Optional[date]
    day_gap: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "reference": self.reference,
            "amount": str(self.amount),
            "bank_date": self.bank_date.isoformat(),
            "disbursement_date": self.disbursement_date.isoformat() if self.disbursement_date else None,
            "day_gap": self.day_gap,
        }


@dataclass
class SweepReport:
    run_id: str
    dry_run: bool
    max_days: int
    reconciled_rows: int
    candidates: List[SweepCandidate]
    write: WriteSummary

    @property
    def amount(self) -> Decimal:
        return sum((c.amount for c in self.candidates), Decimal("0"))

    def to_dict(self, sample_size: int = 15) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "max_days": self.max_days,
            "reconciled_rows": self.reconciled_rows,
            "reset": len(self.candidates),
            "reset_amount": str(self.amount),
            "write": self.write.to_dict(),
            "sample": [c.to_dict() for c in self.candidates[:sample_size]],
        }


# ==================== SERVICE ====================

class RepairService:
    """Correction pass and false-positive sweep over persisted rows."""

    def __init__(
        self,
        db: Optional[AsyncSession] = None,
        session_factory=None,
        settings: Optional[Settings] = None,
        registry: Optional[SourceRegistry] = None,
        repository: Optional[ReconciliationRepository] = None,
        writer: Optional[ReconciliationWriter] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or source_registry
        self.repository = repository or ReconciliationRepository(
            db,
            registry=self.registry,
            page_size=self.settings.PAGE_SIZE,
            max_pages=self.settings.MAX_PAGES,
        )
        if writer is None:
            if session_factory is None:
                raise ValueError("session_factory is required when no writer is given")
            writer = build_writer(session_factory, self.settings)
        self.writer = writer

    async def run_repair(
        self,
        extract: LedgerExtract,
        sources: Optional[Sequence[str]] = None,
        dry_run: bool = True,
    ) -> RepairReport:
        """
        Compare ledger rows against a parsed extract and fix the differences.

        Args:
            extract: Parsed authoritative extract
            sources: Ledger sources the extract covers; defaults to all ledger sources
            dry_run: Report corrections without writing
        """
        run_id = str(uuid.uuid4())
        sources = list(sources or self.registry.ledger_sources())
        prefix_length = self.settings.REPAIR_DESCRIPTION_PREFIX

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            run_id,
            {"command": "repair", "sources": sources, "extract_rows": len(extract.rows), "dry_run": dry_run}
        )

        expected = build_expected_map(extract.rows, prefix_length)
        records = await self.repository.load_transactions(sources)
        comparison = compare_to_extract(records.records, expected, prefix_length)
        corrections = comparison.corrections

        write = await write_under_lease(
            self.repository, run_id, self.settings.LEASE_TTL_SECONDS, dry_run, corrections,
            lambda dry: self.writer.apply_corrections(corrections, dry_run=dry),
        )

        report = RepairReport(
            run_id=run_id,
            dry_run=dry_run,
            sources=sources,
            extract_rows=len(extract.rows),
            extract_rejected=extract.rejected,
            records_loaded=len(records.records),
            comparison=comparison,
            write=write,
        )

        log_reconciliation_event(
            ReconciliationAuditEvent.CORRECTIONS_APPLIED,
            run_id,
            {
                "corrections": len(corrections),
                "by_category": report.by_category,
                "written": write.written,
                "errors": write.errors,
                "dry_run": dry_run,
            }
        )
        return report

    def find_false_positives(self, rows: Iterable[TransactionRecord], max_days: int) -> List[SweepCandidate]:
        candidates = []
        for row in rows:
            if not row.reconciled or not row.is_inflow:
                continue
            disbursed = row.metadata.disbursement_date
            gap = day_diff(row.date, disbursed)
            if gap is None:
                # A disbursement match that never stored its date cannot be verified
                if row.metadata.match_type != MatchStrategy.DISBURSEMENT.value:
                    continue
            elif gap <= max_days:
                continue
            candidates.append(SweepCandidate(
                transaction_id=row.id,
                reference=row.reference,
                amount=row.amount,
                bank_date=row.date,
                disbursement_date=disbursed,
                day_gap=gap,
            ))
        return candidates

    async def sweep_false_positives(
        self,
        dry_run: bool = True,
        max_days: Optional[int] = None,
    ) -> SweepReport:
        """Reset reconciled bank inflows whose disbursement is too far away."""
        run_id = str(uuid.uuid4())
        max_days = self.settings.SWEEP_MAX_DAYS if max_days is None else max_days

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            run_id,
            {"command": "sweep", "max_days": max_days, "dry_run": dry_run}
        )

        reconciled = await self.repository.load_transactions(self.registry.bank_sources(), reconciled=True)
        candidates = self.find_false_positives(reconciled.records, max_days)
        ids = [c.transaction_id for c in candidates]

        write = await write_under_lease(
            self.repository, run_id, self.settings.LEASE_TTL_SECONDS, dry_run, ids,
            lambda dry: self.writer.reset_transactions(ids, SWEEP_REMOVED_KEYS, dry_run=dry),
        )

        log_reconciliation_event(
            ReconciliationAuditEvent.FALSE_POSITIVES_RESET,
            run_id,
            {"candidates": len(ids), "written": write.written, "dry_run": dry_run}
        )

        return SweepReport(
            run_id=run_id,
            dry_run=dry_run,
            max_days=max_days,
            reconciled_rows=len(reconciled.records),
            candidates=candidates,
            write=write,
        )
