"""
Match Strategy Cascade

Pairs unmatched transactions with invoices by trying strategies in a fixed
order and stopping at the first success:

1. order_id              - normalized order id, amount verified exactly  (100)
2. email+amount          - same customer email, amount within 1.0        (90)
3. domain+amount+date    - email domain and rounded amount, <= 3 days    (75)
4. amount+date           - rounded amount +/- 1 bucket, <= 7 days        (50)
5. customer_name+amount  - payer name from metadata or narration, <= 5d  (60)

amount+date is the low-confidence fallback and only runs for sources
without a reliable customer email, or for transactions carrying no email.

Every strategy except order_id also requires the transaction and invoice
currencies to agree.

Ambiguity: when several unclaimed invoices satisfy a strategy, the first
one in index order wins and the match records `ambiguous:<n>`.
Each accepted match claims both ids for the rest of the run.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set

from reconciliation.candidate_index import CandidateIndex
from reconciliation.models import (
    InvoiceRecord,
    MatchResult,
    MatchStrategy,
    RecordState,
    TransactionRecord,
)
from reconciliation.name_extractor import NameExtractor, default_extractor
from reconciliation.normalisation import (
    amounts_within,
    day_diff,
    email_domain,
    normalize_email,
    normalize_name,
    normalize_order_id,
)
from reconciliation.source_registry import SourceRegistry, source_registry

logger = logging.getLogger(__name__)


@dataclass
class CascadeSettings:
    """Tolerances and windows used by the strategies."""
    amount_tolerance: Decimal = Decimal("1.00")
    order_id_tolerance: Decimal = Decimal("0.01")
    domain_window_days: int = 3
    amount_date_window_days: int = 7
    name_window_days: int = 5
    amount_date_all_sources: bool = False
    name_min_length: int = 5

    @classmethod
    def from_settings(cls, settings) -> "CascadeSettings":
        return cls(
            amount_tolerance=settings.AMOUNT_TOLERANCE,
            order_id_tolerance=settings.ORDER_ID_AMOUNT_TOLERANCE,
            domain_window_days=settings.DOMAIN_WINDOW_DAYS,
            amount_date_window_days=settings.AMOUNT_DATE_WINDOW_DAYS,
            name_window_days=settings.NAME_WINDOW_DAYS,
            amount_date_all_sources=settings.AMOUNT_DATE_ALL_SOURCES,
            name_min_length=settings.NAME_CONTAINMENT_MIN_LENGTH,
        )


@dataclass
class MatchContext:
    index: CandidateIndex
    config: CascadeSettings
    registry: SourceRegistry
    extractor: NameExtractor
    claimed_invoices: Set[str] = field(default_factory=set)


# ==================== STRATEGIES ====================

def same_currency(txn: TransactionRecord, invoice: InvoiceRecord) -> bool:
    return (txn.currency_code or "").upper() == (invoice.currency_code or "").upper()


class MatchStrategyRule:
    """
    One step of the cascade.

    Subclasses provide candidates() and accepts(); match() applies the
    claimed-set and first-found rules shared by every step.
    """
    strategy: MatchStrategy
    confidence: int
    same_currency_only: bool = True

    def applies(self, txn: TransactionRecord, ctx: MatchContext) -> bool:
        return True

    def candidates(self, txn: TransactionRecord, ctx: MatchContext) -> Iterable[InvoiceRecord]:
        raise NotImplementedError

    def accepts(self, txn: TransactionRecord, invoice: InvoiceRecord, ctx: MatchContext) -> bool:
        raise NotImplementedError

    def reasons(self, txn: TransactionRecord, invoice: InvoiceRecord, ctx: MatchContext) -> List[str]:
        return []

    def match(self, txn: TransactionRecord, ctx: MatchContext) -> Optional[MatchResult]:
        if not self.applies(txn, ctx):
            return None

        chosen: Optional[InvoiceRecord] = None
        eligible = 0
        seen: Set[str] = set()
        for invoice in self.candidates(txn, ctx):
            if invoice.id in seen or invoice.id in ctx.claimed_invoices or invoice.reconciled:
                continue
            seen.add(invoice.id)
            if self.same_currency_only and not same_currency(txn, invoice):
                continue
            if not self.accepts(txn, invoice, ctx):
                continue
            eligible += 1
            if chosen is None:
                chosen = invoice

        if chosen is None:
            return None

        reasons = self.reasons(txn, chosen, ctx)
        if eligible > 1:
            reasons.append(f"ambiguous:{eligible}")

        return MatchResult(
            transaction_id=txn.id,
            invoice_id=chosen.id,
            strategy=self.strategy,
            confidence=self.confidence,
            reasons=reasons,
            transaction_ref=txn.reference,
            transaction_source=txn.source,
            invoice_number=chosen.invoice_number,
            financial_account_code=chosen.financial_account_code,
            amount=txn.amount,
            invoice_amount=chosen.total_amount,
            transaction_date=txn.date,
        )


class OrderIdStrategy(MatchStrategyRule):
    strategy = MatchStrategy.ORDER_ID
    confidence = 100
    same_currency_only = False

    def applies(self, txn, ctx):
        return bool(normalize_order_id(txn.metadata.order_id))

    def candidates(self, txn, ctx):
        return ctx.index.lookup_order_id(txn.metadata.order_id)

    def accepts(self, txn, invoice, ctx):
        return amounts_within(invoice.total_amount, txn.amount, ctx.config.order_id_tolerance)

    def reasons(self, txn, invoice, ctx):
        return [f"order_id={normalize_order_id(txn.metadata.order_id)}"]


class EmailAmountStrategy(MatchStrategyRule):
    strategy = MatchStrategy.EMAIL_AMOUNT
    confidence = 90

    def applies(self, txn, ctx):
        return normalize_email(txn.metadata.customer_email) is not None

    def candidates(self, txn, ctx):
        return ctx.index.lookup_email(txn.metadata.customer_email)

    def accepts(self, txn, invoice, ctx):
        return amounts_within(invoice.total_amount, txn.amount, ctx.config.amount_tolerance)

    def reasons(self, txn, invoice, ctx):
        return [f"email={normalize_email(txn.metadata.customer_email)}"]


class DomainAmountDateStrategy(MatchStrategyRule):
    strategy = MatchStrategy.DOMAIN_AMOUNT_DATE
    confidence = 75

    def applies(self, txn, ctx):
        return email_domain(txn.metadata.customer_email) is not None

    def candidates(self, txn, ctx):
        return ctx.index.lookup_domain_amount(email_domain(txn.metadata.customer_email), txn.amount)

    def accepts(self, txn, invoice, ctx):
        gap = day_diff(txn.date, invoice.invoice_date)
        return (
            gap is not None
            and gap <= ctx.config.domain_window_days
            and amounts_within(invoice.total_amount, txn.amount, ctx.config.amount_tolerance)
        )

    def reasons(self, txn, invoice, ctx):
        return [
            f"domain={email_domain(txn.metadata.customer_email)}",
            f"days={day_diff(txn.date, invoice.invoice_date)}",
        ]


class CustomerNameAmountStrategy(MatchStrategyRule):
    strategy = MatchStrategy.CUSTOMER_NAME_AMOUNT
    confidence = 60

    def payer_name(self, txn: TransactionRecord, ctx: MatchContext) -> Optional[str]:
        for name in (txn.metadata.customer_name, txn.metadata.company_name):
            if normalize_name(name):
                return name
        hit = ctx.extractor.extract_customer_name(txn.description)
        return hit[0] if hit else None

    def applies(self, txn, ctx):
        return self.payer_name(txn, ctx) is not None

    def candidates(self, txn, ctx):
        return ctx.index.lookup_name(self.payer_name(txn, ctx), ctx.config.name_min_length)

    def accepts(self, txn, invoice, ctx):
        gap = day_diff(txn.date, invoice.invoice_date)
        return (
            gap is not None
            and gap <= ctx.config.name_window_days
            and amounts_within(invoice.total_amount, txn.amount, ctx.config.amount_tolerance)
        )

    def reasons(self, txn, invoice, ctx):
        return [
            f"name={normalize_name(self.payer_name(txn, ctx))}",
            f"days={day_diff(txn.date, invoice.invoice_date)}",
        ]


class AmountDateStrategy(MatchStrategyRule):
    strategy = MatchStrategy.AMOUNT_DATE
    confidence = 50

    def applies(self, txn, ctx):
        if ctx.config.amount_date_all_sources:
            return True
        return (
            not ctx.registry.has_reliable_email(txn.source)
            or normalize_email(txn.metadata.customer_email) is None
        )

    def candidates(self, txn, ctx):
        return ctx.index.lookup_amount(txn.amount, spread=1)

    def accepts(self, txn, invoice, ctx):
        gap = day_diff(txn.date, invoice.invoice_date)
        return (
            gap is not None
            and gap <= ctx.config.amount_date_window_days
            and amounts_within(invoice.total_amount, txn.amount, ctx.config.amount_tolerance)
        )

    def reasons(self, txn, invoice, ctx):
        return ["low-confidence", f"days={day_diff(txn.date, invoice.invoice_date)}"]


DEFAULT_STRATEGIES: Sequence[MatchStrategyRule] = (
    OrderIdStrategy(),
    EmailAmountStrategy(),
    DomainAmountDateStrategy(),
    AmountDateStrategy(),
    CustomerNameAmountStrategy(),
)


# ==================== CASCADE ====================

@dataclass
class CascadeOutcome:
    """Result of one cascade pass."""
    matches: List[MatchResult] = field(default_factory=list)
    unmatched: List[str] = field(default_factory=list)
    excluded: int = 0
    already_reconciled: int = 0
    considered: int = 0
    by_strategy: Dict[str, int] = field(default_factory=dict)
    ambiguous: int = 0

    @property
    def matched_amount(self) -> Decimal:
        return sum((m.amount for m in self.matches), Decimal("0"))

    def state_of(self, transaction_id: str) -> RecordState:
        if any(m.transaction_id == transaction_id for m in self.matches):
            return RecordState.MATCHED
        if transaction_id in self.unmatched:
            return RecordState.PERMANENTLY_UNMATCHED
        return RecordState.UNMATCHED

    def summary(self, sample_size: int = 15) -> Dict:
        return {
            "considered": self.considered,
            "matched": len(self.matches),
            "unmatched": len(self.unmatched),
            "excluded": self.excluded,
            "already_reconciled": self.already_reconciled,
            "ambiguous": self.ambiguous,
            "by_strategy": dict(self.by_strategy),
            "matched_amount": str(self.matched_amount),
            "sample": [m.to_dict() for m in self.matches[:sample_size]],
        }


class MatchCascade:
    """
    Runs the ordered strategies over a batch of transactions.

    Args:
        strategies: Ordered strategy list; defaults to DEFAULT_STRATEGIES
        config: Tolerances and windows
        registry: Source registry (reliable-email flags, excluded row types)
        extractor: Narration name extractor for the name strategy
    """

    def __init__(
        self,
        strategies: Optional[Sequence[MatchStrategyRule]] = None,
        config: Optional[CascadeSettings] = None,
        registry: Optional[SourceRegistry] = None,
        extractor: Optional[NameExtractor] = None,
    ):
        self.strategies = list(strategies if strategies is not None else DEFAULT_STRATEGIES)
        self.config = config or CascadeSettings()
        self.registry = registry or source_registry
        self.extractor = extractor or default_extractor

    def is_excluded(self, txn: TransactionRecord) -> bool:
        """Payout and refund rows never pay an invoice."""
        row_type = (txn.metadata.type or "").lower()
        return bool(row_type) and row_type in self.registry.excluded_types(txn.source)

    def run(
        self,
        transactions: Iterable[TransactionRecord],
        index: CandidateIndex,
        claimed_invoices: Optional[Set[str]] = None,
    ) -> CascadeOutcome:
        """
        Match every eligible transaction at most once.

        Args:
            transactions: Transactions in processing order
            index: Candidate index over unreconciled invoices
            claimed_invoices: Invoice ids already taken earlier in the run
        """
        ctx = MatchContext(
            index=index,
            config=self.config,
            registry=self.registry,
            extractor=self.extractor,
            claimed_invoices=set(claimed_invoices or ()),
        )
        outcome = CascadeOutcome(by_strategy={s.strategy.value: 0 for s in self.strategies})
        claimed_transactions: Set[str] = set()

        for txn in transactions:
            if txn.reconciled:
                outcome.already_reconciled += 1
                continue
            if self.is_excluded(txn):
                outcome.excluded += 1
                continue
            if txn.id in claimed_transactions:
                continue
            outcome.considered += 1

            result = None
            for strategy in self.strategies:
                result = strategy.match(txn, ctx)
                if result is not None:
                    break

            if result is None:
                outcome.unmatched.append(txn.id)
                continue

            claimed_transactions.add(txn.id)
            ctx.claimed_invoices.add(result.invoice_id)
            outcome.matches.append(result)
            outcome.by_strategy[result.strategy.value] = outcome.by_strategy.get(result.strategy.value, 0) + 1
            if any(r.startswith("ambiguous:") for r in result.reasons):
                outcome.ambiguous += 1

        logger.info(
            f"Cascade finished: {len(outcome.matches)} matched, "
            f"{len(outcome.unmatched)} unmatched, {outcome.excluded} excluded"
        )
        return outcome

