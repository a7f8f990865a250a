"""
Reconciliation Service

Orchestrates the engine's batch runs:
- Matching: invoices -> candidate index -> cascade -> writer
- Ledger codes: fill missing account codes on gateway transactions
- Bank classification: code bank inflows from the payer name in the narration
- Disbursements: pair bank inflows with gateway payout groups

Every run is dry-run unless told otherwise, logs audit events, and holds
the single-writer lease while it writes.
"""

import uuid
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from reconciliation.candidate_index import build_candidate_index
from reconciliation.ledger_codes import (
    LedgerCodeAssignment,
    LedgerCodeResolver,
    build_ledger_code_votes,
    majority_code,
)
from reconciliation.matching_rules.cascade import CascadeOutcome, CascadeSettings, MatchCascade
from reconciliation.matching_rules.disbursement_rules import (
    DisbursementMatcher,
    DisbursementOutcome,
    group_key,
)
from reconciliation.models import FacProvenance, InvoiceRecord, TransactionRecord
from reconciliation.name_extractor import NameExtractor, default_extractor, match_customer_name
from reconciliation.services.repository import ReconciliationRepository
from reconciliation.services.writer import (
    ReconciliationWriter,
    WriteSummary,
    build_writer,
    write_under_lease,
)
from reconciliation.source_registry import SourceRegistry, source_registry

logger = logging.getLogger(__name__)


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    MATCHES_APPLIED = "reconciliation.matches_applied"
    LEDGER_CODES_ASSIGNED = "reconciliation.ledger_codes_assigned"
    BANK_INFLOWS_CLASSIFIED = "reconciliation.bank_inflows_classified"
    DISBURSEMENTS_MATCHED = "reconciliation.disbursements_matched"
    CORRECTIONS_APPLIED = "reconciliation.corrections_applied"
    FALSE_POSITIVES_RESET = "reconciliation.false_positives_reset"


def log_reconciliation_event(
    event_type: str,
    run_id: str,
    details: Dict[str, Any],
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "run_id": run_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


# ==================== REPORTS ====================

@dataclass
class MatchingRunReport:
    """Result of a matching run."""
    run_id: str
    dry_run: bool
    sources: List[str]
    invoices_loaded: int
    invoices_open: int
    transactions_loaded: int
    rejected_rows: int
    outcome: CascadeOutcome
    write: WriteSummary

    def to_dict(self, sample_size: int = 15) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "sources": list(self.sources),
            "invoices_loaded": self.invoices_loaded,
            "invoices_open": self.invoices_open,
            "transactions_loaded": self.transactions_loaded,
            "rejected_rows": self.rejected_rows,
            "matching": self.outcome.summary(sample_size),
            "write": self.write.to_dict(),
        }


@dataclass
class LedgerCodeRunReport:
    """Result of a ledger-code backfill or bank classification run."""
    run_id: str
    dry_run: bool
    candidates: int
    assignments: List[LedgerCodeAssignment]
    unresolved: int
    write: WriteSummary
    votes: Dict[str, int] = field(default_factory=dict)
    unextractable: Dict[str, int] = field(default_factory=dict)
    unmatched_names: int = 0

    @property
    def by_provenance(self) -> Dict[str, int]:
        return dict(Counter(a.provenance.value for a in self.assignments))

    def to_dict(self, sample_size: int = 15) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "candidates": self.candidates,
            "assigned": len(self.assignments),
            "unresolved": self.unresolved,
            "by_provenance": self.by_provenance,
            "votes": dict(self.votes),
            "unextractable": dict(self.unextractable),
            "unmatched_names": self.unmatched_names,
            "write": self.write.to_dict(),
            "sample": [a.to_dict() for a in self.assignments[:sample_size]],
        }


@dataclass
class DisbursementRunReport:
    run_id: str
    dry_run: bool
    bank_rows: int
    gateway_rows: int
    outcome: DisbursementOutcome
    write: WriteSummary

    def to_dict(self, sample_size: int = 15) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "bank_rows": self.bank_rows,
            "gateway_rows": self.gateway_rows,
            "disbursements": self.outcome.summary(sample_size),
            "write": self.write.to_dict(),
        }


# ==================== SERVICE ====================

class ReconciliationService:
    """
    Batch reconciliation over persisted transaction and invoice rows.

    Reads go through the session passed in; writes go through the writer,
    which opens one session per item from the session factory.
    """

    def __init__(
        self,
        db: Optional[AsyncSession] = None,
        session_factory=None,
        settings: Optional[Settings] = None,
        registry: Optional[SourceRegistry] = None,
        extractor: Optional[NameExtractor] = None,
        repository: Optional[ReconciliationRepository] = None,
        writer: Optional[ReconciliationWriter] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or source_registry
        self.extractor = extractor or default_extractor
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
        self.cascade = MatchCascade(
            config=CascadeSettings.from_settings(self.settings),
            registry=self.registry,
            extractor=self.extractor,
        )

    async def _write(self, run_id: str, dry_run: bool, items: Sequence, apply) -> WriteSummary:
        return await write_under_lease(
            self.repository, run_id, self.settings.LEASE_TTL_SECONDS, dry_run, items, apply
        )

    # ==================== MATCHING ====================

    async def run_matching(
        self,
        sources: Optional[Sequence[str]] = None,
        dry_run: bool = True,
    ) -> MatchingRunReport:
        """
        Match unreconciled transactions against open invoices.

        Args:
            sources: Transaction sources to match; defaults to every gateway
            dry_run: Compute matches without writing
        """
        run_id = str(uuid.uuid4())
        sources = list(sources or self.registry.gateway_sources())

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            run_id,
            {"command": "match", "sources": sources, "dry_run": dry_run}
        )

        invoices = await self.repository.load_invoices()
        open_invoices = [inv for inv in invoices.records if not inv.reconciled]
        index = build_candidate_index(open_invoices)

        transactions = await self.repository.load_transactions(sources, reconciled=False)
        outcome = self.cascade.run(transactions.records, index)

        write = await self._write(
            run_id, dry_run, outcome.matches,
            lambda dry: self.writer.apply_matches(outcome.matches, dry_run=dry),
        )

        if not dry_run:
            log_reconciliation_event(
                ReconciliationAuditEvent.MATCHES_APPLIED,
                run_id,
                write.to_dict()
            )

        report = MatchingRunReport(
            run_id=run_id,
            dry_run=dry_run,
            sources=sources,
            invoices_loaded=len(invoices.records),
            invoices_open=len(open_invoices),
            transactions_loaded=len(transactions.records),
            rejected_rows=invoices.rejected + transactions.rejected,
            outcome=outcome,
            write=write,
        )

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_COMPLETED,
            run_id,
            {
                "command": "match",
                "matched": len(outcome.matches),
                "unmatched": len(outcome.unmatched),
                "by_strategy": outcome.by_strategy,
                "written": write.written,
                "errors": write.errors,
            }
        )
        return report

    # ==================== LEDGER CODES ====================

    async def run_ledger_codes(
        self,
        sources: Optional[Sequence[str]] = None,
        dry_run: bool = True,
    ) -> LedgerCodeRunReport:
        """
        Infer account codes for gateway transactions that have none, either on
        the row or on the invoice it is linked to.
        """
        run_id = str(uuid.uuid4())
        sources = list(sources or self.registry.gateway_sources())

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            run_id,
            {"command": "ledger-codes", "sources": sources, "dry_run": dry_run}
        )

        invoices = await self.repository.load_invoices()
        transactions = await self.repository.load_transactions(sources)
        invoices_by_id: Dict[str, InvoiceRecord] = {inv.id: inv for inv in invoices.records}

        def known_code(txn: TransactionRecord) -> Optional[str]:
            # A linked invoice that carries a code settles the row
            linked = invoices_by_id.get(txn.metadata.matched_invoice_id or "")
            return txn.metadata.ledger_code or (linked.financial_account_code if linked else None)

        coded = [t for t in transactions.records if known_code(t)]
        votes = build_ledger_code_votes(invoices.records, coded, code_of=known_code)
        resolver = LedgerCodeResolver(votes, domain_min_votes=self.settings.DOMAIN_MIN_VOTES)

        gaps = [
            t for t in transactions.records
            if not known_code(t) and not self.cascade.is_excluded(t)
        ]

        now = datetime.now(timezone.utc)
        assignments: List[LedgerCodeAssignment] = []
        for txn in gaps:
            linked = invoices_by_id.get(txn.metadata.matched_invoice_id or "")
            assignment = resolver.resolve(
                transaction_id=txn.id,
                source=txn.source,
                customer_name=self._customer_name(txn, linked),
                customer_email=txn.metadata.customer_email or (linked.customer_email if linked else None),
                now=now,
            )
            if assignment:
                assignments.append(assignment)

        write = await self._write(
            run_id, dry_run, assignments,
            lambda dry: self.writer.apply_ledger_codes(assignments, dry_run=dry),
        )

        report = LedgerCodeRunReport(
            run_id=run_id,
            dry_run=dry_run,
            candidates=len(gaps),
            assignments=assignments,
            unresolved=len(gaps) - len(assignments),
            write=write,
            votes=votes.summary(),
        )

        log_reconciliation_event(
            ReconciliationAuditEvent.LEDGER_CODES_ASSIGNED,
            run_id,
            {
                "candidates": report.candidates,
                "by_provenance": report.by_provenance,
                "unresolved": report.unresolved,
                "written": write.written,
                "dry_run": dry_run,
            }
        )
        return report

    @staticmethod
    def _customer_name(txn: TransactionRecord, linked: Optional[InvoiceRecord]) -> Optional[str]:
        return (
            txn.metadata.customer_name
            or txn.metadata.company_name
            or (linked.customer_name if linked else None)
        )

    async def classify_bank_inflows(self, dry_run: bool = True) -> LedgerCodeRunReport:
        """
        Code unreconciled bank inflows from the payer named in the narration.

        Rows whose narration no rule understands are only counted, by
        category, for reporting.
        """
        run_id = str(uuid.uuid4())
        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            run_id,
            {"command": "classify-bank", "dry_run": dry_run}
        )

        invoices = await self.repository.load_invoices()
        votes = build_ledger_code_votes(invoices.records)
        bank = await self.repository.load_transactions(self.registry.bank_sources(), reconciled=False)

        candidates = [
            t for t in bank.records
            if t.is_inflow and not t.metadata.ledger_code and not t.metadata.payment_source
        ]

        now = datetime.now(timezone.utc)
        assignments: List[LedgerCodeAssignment] = []
        unextractable: Counter = Counter()
        unmatched_names = 0

        for txn in candidates:
            hit = self.extractor.extract_customer_name(txn.description)
            if hit is None:
                unextractable[self.extractor.categorise_unextractable(txn.description).value] += 1
                continue

            name, rule = hit
            key = match_customer_name(name, votes.by_name, self.settings.NAME_CONTAINMENT_MIN_LENGTH)
            winner = majority_code(votes.by_name.get(key)) if key else None
            if winner is None:
                unmatched_names += 1
                continue

            assignments.append(LedgerCodeAssignment(
                transaction_id=txn.id,
                code=winner[0],
                provenance=FacProvenance.CUSTOMER_NAME,
                assigned_at=now,
                votes=winner[1],
                name_rule=rule,
            ))

        write = await self._write(
            run_id, dry_run, assignments,
            lambda dry: self.writer.apply_ledger_codes(assignments, dry_run=dry),
        )

        report = LedgerCodeRunReport(
            run_id=run_id,
            dry_run=dry_run,
            candidates=len(candidates),
            assignments=assignments,
            unresolved=len(candidates) - len(assignments),
            write=write,
            votes=votes.summary(),
            unextractable=dict(unextractable),
            unmatched_names=unmatched_names,
        )

        log_reconciliation_event(
            ReconciliationAuditEvent.BANK_INFLOWS_CLASSIFIED,
            run_id,
            {
                "candidates": report.candidates,
                "assigned": len(assignments),
                "unextractable": report.unextractable,
                "unmatched_names": unmatched_names,
                "dry_run": dry_run,
            }
        )
        return report

    # ==================== DISBURSEMENTS ====================

    async def run_disbursements(self, dry_run: bool = True) -> DisbursementRunReport:
        """Pair unreconciled bank inflows with gateway payout groups."""
        run_id = str(uuid.uuid4())
        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            run_id,
            {"command": "disbursements", "dry_run": dry_run}
        )

        bank = await self.repository.load_transactions(self.registry.bank_sources(), reconciled=False)
        gateway = await self.repository.load_transactions(self.registry.gateway_sources())
        settled = [t for t in gateway.records if not self.cascade.is_excluded(t)]
        paid = await self.repository.load_transactions(self.registry.bank_sources(), reconciled=True)
        already_claimed = {
            group_key(t.metadata.payment_source, t.metadata.disbursement_date)
            for t in paid.records
            if t.metadata.payment_source and t.metadata.disbursement_date
        }

        matcher = DisbursementMatcher(
            registry=self.registry,
            window_days=self.settings.DISBURSEMENT_WINDOW_DAYS,
            tolerance_percent=self.settings.DISBURSEMENT_TOLERANCE_PERCENT,
            min_tolerance=self.settings.AMOUNT_TOLERANCE,
        )
        outcome = matcher.match(bank.records, settled, claimed_groups=already_claimed)

        write = await self._write(
            run_id, dry_run, outcome.matches,
            lambda dry: self.writer.apply_disbursements(outcome.matches, dry_run=dry),
        )

        log_reconciliation_event(
            ReconciliationAuditEvent.DISBURSEMENTS_MATCHED,
            run_id,
            {
                "matched": len(outcome.matches),
                "by_source": outcome.by_source,
                "written": write.written,
                "dry_run": dry_run,
            }
        )

        return DisbursementRunReport(
            run_id=run_id,
            dry_run=dry_run,
            bank_rows=len(bank.records),
            gateway_rows=len(settled),
            outcome=outcome,
            write=write,
        )
