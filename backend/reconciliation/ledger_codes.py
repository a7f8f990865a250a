"""
Ledger-Code Resolver

Infers a financial account code (FAC) for transactions that have none,
from how the same customer or email domain was coded on invoices.

Resolution order:
1. Customer name -> majority code (ties go to the first code seen)
2. Email domain -> majority code, only when the winner has >= 2 votes
3. Source-dominant -> most frequent code among already-coded
   transactions of the same source

The vote tables are built once per run by a pure function and frozen;
nothing mutates them while a run resolves codes.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from reconciliation.models import FacProvenance, InvoiceRecord, TransactionRecord
from reconciliation.normalisation import email_domain, normalize_name

logger = logging.getLogger(__name__)

Counts = Mapping[str, int]


def _freeze(table: Dict[str, Dict[str, int]]) -> Mapping[str, Counts]:
    return MappingProxyType({k: MappingProxyType(dict(v)) for k, v in table.items()})


def majority_code(counts: Optional[Counts]) -> Optional[Tuple[str, int]]:
    """
    Highest-count code; on a tie the code seen first wins.

    Returns:
        (code, count), or None for an empty table
    """
    best: Optional[Tuple[str, int]] = None
    for code, count in (counts or {}).items():
        if best is None or count > best[1]:
            best = (code, count)
    return best


@dataclass(frozen=True)
class LedgerCodeVotes:
    """Immutable vote snapshot for one run."""
    by_name: Mapping[str, Counts] = field(default_factory=lambda: MappingProxyType({}))
    by_domain: Mapping[str, Counts] = field(default_factory=lambda: MappingProxyType({}))
    by_source: Mapping[str, Counts] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_counts(
        cls,
        by_name: Optional[Dict[str, Dict[str, int]]] = None,
        by_domain: Optional[Dict[str, Dict[str, int]]] = None,
        by_source: Optional[Dict[str, Dict[str, int]]] = None,
    ) -> "LedgerCodeVotes":
        return cls(
            by_name=_freeze(by_name or {}),
            by_domain=_freeze(by_domain or {}),
            by_source=_freeze(by_source or {}),
        )

    def summary(self) -> Dict[str, int]:
        return {
            "names": len(self.by_name),
            "domains": len(self.by_domain),
            "sources": len(self.by_source),
        }


def build_ledger_code_votes(
    invoices: Iterable[InvoiceRecord],
    coded_transactions: Iterable[TransactionRecord] = (),
    code_of: Optional[Callable[[TransactionRecord], Optional[str]]] = None,
) -> LedgerCodeVotes:
    """
    Count codes by customer name, email domain and transaction source.

    Args:
        invoices: Full invoice set; only invoices carrying a code vote
        coded_transactions: Transactions whose code is already known
        code_of: Known code of a transaction; defaults to its own metadata
    """
    by_name: Dict[str, Dict[str, int]] = {}
    by_domain: Dict[str, Dict[str, int]] = {}
    by_source: Dict[str, Dict[str, int]] = {}

    for invoice in invoices:
        code = invoice.financial_account_code
        if not code:
            continue
        name = normalize_name(invoice.customer_name)
        if name:
            counts = by_name.setdefault(name, {})
            counts[code] = counts.get(code, 0) + 1
        domain = email_domain(invoice.customer_email)
        if domain:
            counts = by_domain.setdefault(domain, {})
            counts[code] = counts.get(code, 0) + 1

    for txn in coded_transactions:
        code = code_of(txn) if code_of else txn.metadata.ledger_code
        if not code:
            continue
        counts = by_source.setdefault(txn.source, {})
        counts[code] = counts.get(code, 0) + 1

    return LedgerCodeVotes.from_counts(by_name, by_domain, by_source)


@dataclass
class LedgerCodeAssignment:
    transaction_id: str
    code: str
    provenance: FacProvenance
    assigned_at: datetime
    votes: int = 0
    name_rule: Optional[str] = None

    def to_patch(self) -> Dict[str, Any]:
        """Metadata keys written back to the transaction."""
        patch = {
            "matched_invoice_fac": self.code,
            "fac_fallback_source": self.provenance.value,
            "fac_fallback_at": self.assigned_at.isoformat(),
        }
        if self.name_rule:
            patch["fac_name_rule"] = self.name_rule
        return patch

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "code": self.code,
            "provenance": self.provenance.value,
            "votes": self.votes,
            "name_rule": self.name_rule,
            "assigned_at": self.assigned_at.isoformat(),
        }


class LedgerCodeResolver:
    """
    Resolves codes against a frozen vote snapshot.

    Args:
        votes: Snapshot built by build_ledger_code_votes
        domain_min_votes: Minimum winning count for domain votes
    """

    def __init__(self, votes: LedgerCodeVotes, domain_min_votes: int = 2):
        self.votes = votes
        self.domain_min_votes = domain_min_votes

    def by_customer_name(self, name: Optional[str]) -> Optional[Tuple[str, int]]:
        key = normalize_name(name)
        return majority_code(self.votes.by_name.get(key)) if key else None

    def by_email_domain(self, email: Optional[str]) -> Optional[Tuple[str, int]]:
        domain = email_domain(email)
        if not domain:
            return None
        winner = majority_code(self.votes.by_domain.get(domain))
        if winner and winner[1] >= self.domain_min_votes:
            return winner
        return None

    def source_dominant(self, source: str) -> Optional[Tuple[str, int]]:
        return majority_code(self.votes.by_source.get(source))

    def resolve(
        self,
        transaction_id: str,
        source: str,
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[LedgerCodeAssignment]:
        """
        Walk name, domain, then source-dominant.

        Returns:
            Assignment tagged with provenance, or None when nothing votes
        """
        assigned_at = now or datetime.now(timezone.utc)

        steps = (
            (FacProvenance.CUSTOMER_NAME, lambda: self.by_customer_name(customer_name)),
            (FacProvenance.EMAIL_DOMAIN, lambda: self.by_email_domain(customer_email)),
            (FacProvenance.SOURCE_DOMINANT, lambda: self.source_dominant(source)),
        )
        for provenance, lookup in steps:
            winner = lookup()
            if winner:
                return LedgerCodeAssignment(
                    transaction_id=transaction_id,
                    code=winner[0],
                    provenance=provenance,
                    assigned_at=assigned_at,
                    votes=winner[1],
                )
        return None
