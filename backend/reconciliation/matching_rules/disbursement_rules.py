"""
Disbursement Matching Rules

Gateways pay out collected funds to the bank in batches, days after the
underlying transactions. A bank inflow whose narration names a gateway is
matched against that gateway's transactions grouped by disbursement date:

- the group's disbursement date is within +/- window days of the bank date
- the group total is within max(1.0, 2% of the bank amount)

Each group pays at most one bank row, across runs: groups already recorded
on a reconciled bank row are passed in as claimed.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set

from reconciliation.models import MatchStrategy, TransactionRecord
from reconciliation.normalisation import day_diff
from reconciliation.source_registry import SourceRegistry, source_registry

logger = logging.getLogger(__name__)

DISBURSEMENT_CONFIDENCE = 70


def group_key(source: str, disbursement_date: date) -> str:
    return f"{source}:{disbursement_date.isoformat()}"


@dataclass
class DisbursementGroup:
    """Gateway transactions settled together on one date."""
    source: str
    disbursement_date: date
    total: Decimal = Decimal("0")
    transaction_ids: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return group_key(self.source, self.disbursement_date)


@dataclass
class DisbursementMatch:
    bank_transaction_id: str
    bank_reference: str
    bank_amount: Decimal
    bank_date: date
    group: DisbursementGroup
    day_gap: int

    @property
    def difference(self) -> Decimal:
        return self.bank_amount - self.group.total

    def to_patch(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            "payment_source": self.group.source,
            "disbursement_date": self.group.disbursement_date.isoformat(),
            "transaction_ids": list(self.group.transaction_ids),
            "match_type": MatchStrategy.DISBURSEMENT.value,
            "confidence": DISBURSEMENT_CONFIDENCE,
            "reconciled_at": (now or datetime.now(timezone.utc)).isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bank_transaction_id": self.bank_transaction_id,
            "bank_reference": self.bank_reference,
            "bank_amount": str(self.bank_amount),
            "bank_date": self.bank_date.isoformat(),
            "source": self.group.source,
            "disbursement_date": self.group.disbursement_date.isoformat(),
            "group_total": str(self.group.total),
            "group_size": len(self.group.transaction_ids),
            "day_gap": self.day_gap,
            "difference": str(self.difference),
        }


@dataclass
class DisbursementOutcome:
    matches: List[DisbursementMatch] = field(default_factory=list)
    unmatched: List[str] = field(default_factory=list)
    no_gateway_keyword: int = 0
    groups: int = 0
    by_source: Dict[str, int] = field(default_factory=dict)

    def summary(self, sample_size: int = 15) -> Dict[str, Any]:
        return {
            "groups": self.groups,
            "matched": len(self.matches),
            "unmatched": len(self.unmatched),
            "no_gateway_keyword": self.no_gateway_keyword,
            "by_source": dict(self.by_source),
            "matched_amount": str(sum((m.bank_amount for m in self.matches), Decimal("0"))),
            "sample": [m.to_dict() for m in self.matches[:sample_size]],
        }


def group_by_disbursement(transactions: Iterable[TransactionRecord]) -> List[DisbursementGroup]:
    """
    Sum gateway transactions per (source, disbursement date).

    Rows without a disbursement date cannot be placed and are skipped.
    """
    groups: Dict[str, DisbursementGroup] = {}
    for txn in transactions:
        disbursed = txn.metadata.disbursement_date
        if disbursed is None:
            continue
        group = groups.get(group_key(txn.source, disbursed))
        if group is None:
            group = DisbursementGroup(source=txn.source, disbursement_date=disbursed)
            groups[group.key] = group
        group.total += txn.amount
        group.transaction_ids.append(txn.id)
    return list(groups.values())


class DisbursementMatcher:
    """
    Matches bank inflows to gateway disbursement groups.

    Args:
        registry: Supplies narration keywords and settlement currency per gateway
        window_days: Maximum bank/disbursement date gap
        tolerance_percent: Relative tolerance on the bank amount
        min_tolerance: Absolute tolerance floor
    """

    def __init__(
        self,
        registry: Optional[SourceRegistry] = None,
        window_days: int = 5,
        tolerance_percent: Decimal = Decimal("0.02"),
        min_tolerance: Decimal = Decimal("1.00"),
    ):
        self.registry = registry or source_registry
        self.window_days = window_days
        self.tolerance_percent = tolerance_percent
        self.min_tolerance = min_tolerance

    def tolerance_for(self, amount: Decimal) -> Decimal:
        return max(self.min_tolerance, abs(amount) * self.tolerance_percent)

    def gateways_named_in(self, bank: TransactionRecord) -> List[str]:
        narration = (bank.description or "").lower()
        return [
            source
            for source, keywords in self.registry.payout_keywords(bank.currency_code).items()
            if any(k in narration for k in keywords)
        ]

    def match(
        self,
        bank_rows: Iterable[TransactionRecord],
        gateway_transactions: Iterable[TransactionRecord],
        claimed_groups: Optional[Iterable[str]] = None,
    ) -> DisbursementOutcome:
        """
        Args:
            claimed_groups: Group keys (`source:date`) already paid to a bank
                row by an earlier run; these are never offered again
        """
        groups = group_by_disbursement(gateway_transactions)
        by_source: Dict[str, List[DisbursementGroup]] = {}
        for group in groups:
            by_source.setdefault(group.source, []).append(group)

        outcome = DisbursementOutcome(groups=len(groups))
        claimed: Set[str] = set(claimed_groups or ())

        for bank in bank_rows:
            if bank.reconciled or not bank.is_inflow:
                continue
            sources = self.gateways_named_in(bank)
            if not sources:
                outcome.no_gateway_keyword += 1
                continue

            tolerance = self.tolerance_for(bank.amount)
            best: Optional[DisbursementMatch] = None
            for source in sources:
                for group in by_source.get(source, []):
                    if group.key in claimed:
                        continue
                    gap = day_diff(bank.date, group.disbursement_date)
                    if gap is None or gap > self.window_days:
                        continue
                    if abs(bank.amount - group.total) > tolerance:
                        continue
                    # Closest date wins; equal gaps keep the first group found
                    if best is None or gap < best.day_gap:
                        best = DisbursementMatch(
                            bank_transaction_id=bank.id,
                            bank_reference=bank.reference,
                            bank_amount=bank.amount,
                            bank_date=bank.date,
                            group=group,
                            day_gap=gap,
                        )

            if best is None:
                outcome.unmatched.append(bank.id)
                continue

            claimed.add(best.group.key)
            outcome.matches.append(best)
            outcome.by_source[best.group.source] = outcome.by_source.get(best.group.source, 0) + 1

        logger.info(
            f"Disbursement matching: {len(outcome.matches)} bank rows matched "
            f"against {outcome.groups} payout groups"
        )
        return outcome
