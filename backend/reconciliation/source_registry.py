"""
Reconciliation Source Registry

Central registry of the financial sources the engine reconciles.
Each source has:
- Unique identifier (the `source` column of transaction_records)
- Kind (gateway, bank feed, ledger)
- Whether it carries a reliable customer email
- Metadata key aliases resolved when rows are loaded

Supported Sources:
- Braintree (revenue and Amex merchant accounts)
- Stripe (EUR and USD accounts)
- GoCardless (direct debit, no reliable email)
- Bankinter EUR and Chase USD bank feeds
- Ledger actuals (rows repaired against the accounting extract)
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Any, List, Optional, Union


class ReconciliationSource(str, Enum):
    """
    Recognised transaction sources.
    """
    BRAINTREE_REVENUE = "braintree-api-revenue"
    BRAINTREE_AMEX = "braintree-amex"
    STRIPE_EUR = "stripe-eur"
    STRIPE_USD = "stripe-usd"
    GOCARDLESS = "gocardless"
    BANKINTER_EUR = "bankinter-eur"
    CHASE_USD = "chase-usd"
    LEDGER_ACTUALS = "ledger-actuals"


class SourceKind(str, Enum):
    """
    What a source reports.
    """
    GATEWAY = "GATEWAY"   # Settled card/direct-debit payments
    BANK = "BANK"         # Bank account movements
    LEDGER = "LEDGER"     # Accounting ledger lines


SourceId = Union[ReconciliationSource, str]


@dataclass
class SourceConfig:
    """
    Configuration for a transaction source.
    """
    source: str
    display_name: str
    kind: SourceKind
    priority: int  # Lower = processed first
    enabled: bool = True
    currency: str = "EUR"
    gateway_family: Optional[str] = None
    reliable_email: bool = True
    metadata_aliases: Dict[str, str] = field(default_factory=dict)
    excluded_types: List[str] = field(default_factory=list)
    narration_keywords: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "display_name": self.display_name,
            "kind": self.kind.value,
            "priority": self.priority,
            "enabled": self.enabled,
            "currency": self.currency,
            "gateway_family": self.gateway_family,
            "reliable_email": self.reliable_email,
            "metadata_aliases": dict(self.metadata_aliases),
            "excluded_types": list(self.excluded_types),
        }


def _key(source: SourceId) -> str:
    return source.value if isinstance(source, ReconciliationSource) else str(source)


_BRAINTREE_ALIASES = {
    "email": "customer_email",
    "customer_full_name": "customer_name",
    "billing_name": "customer_name",
    "settlement_date": "disbursement_date",
}

_STRIPE_ALIASES = {
    "payment_intent": "transaction_id",
    "charge_id": "transaction_id",
    "email": "customer_email",
    "receipt_email": "customer_email",
    "billing_name": "customer_name",
    "available_on": "disbursement_date",
    "payout_date": "disbursement_date",
}

_GOCARDLESS_ALIASES = {
    "payment_id": "transaction_id",
    "mandate_name": "customer_name",
    "payout_date": "disbursement_date",
    "charge_date": "disbursement_date",
    "reference": "order_id",
}

_BANK_ALIASES = {
    "fac": "financial_account_code",
    "settlement_date": "disbursement_date",
}

_LEDGER_ALIASES = {
    "fa_code": "financial_account_code",
    "fac": "financial_account_code",
}


class SourceRegistry:
    """
    Central registry for transaction sources.

    Manages source configurations and provides lookup methods
    for the loader, the cascade and the ledger-code resolver.
    """

    _default_configs: Dict[str, SourceConfig] = {
        ReconciliationSource.BRAINTREE_REVENUE.value: SourceConfig(
            source=ReconciliationSource.BRAINTREE_REVENUE.value,
            display_name="Braintree Revenue",
            kind=SourceKind.GATEWAY,
            priority=1,
            gateway_family="braintree",
            metadata_aliases=_BRAINTREE_ALIASES,
            narration_keywords=["braintree"],
        ),
        ReconciliationSource.BRAINTREE_AMEX.value: SourceConfig(
            source=ReconciliationSource.BRAINTREE_AMEX.value,
            display_name="Braintree Amex",
            kind=SourceKind.GATEWAY,
            priority=2,
            gateway_family="braintree",
            metadata_aliases=_BRAINTREE_ALIASES,
            narration_keywords=["american express", "amex"],
        ),
        ReconciliationSource.STRIPE_EUR.value: SourceConfig(
            source=ReconciliationSource.STRIPE_EUR.value,
            display_name="Stripe EUR",
            kind=SourceKind.GATEWAY,
            priority=3,
            gateway_family="stripe",
            metadata_aliases=_STRIPE_ALIASES,
            excluded_types=["payout"],
            narration_keywords=["stripe"],
        ),
        ReconciliationSource.STRIPE_USD.value: SourceConfig(
            source=ReconciliationSource.STRIPE_USD.value,
            display_name="Stripe USD",
            kind=SourceKind.GATEWAY,
            priority=4,
            currency="USD",
            gateway_family="stripe",
            metadata_aliases=_STRIPE_ALIASES,
            excluded_types=["payout"],
            narration_keywords=["stripe"],
        ),
        ReconciliationSource.GOCARDLESS.value: SourceConfig(
            source=ReconciliationSource.GOCARDLESS.value,
            display_name="GoCardless Direct Debit",
            kind=SourceKind.GATEWAY,
            priority=5,
            gateway_family="gocardless",
            reliable_email=False,
            metadata_aliases=_GOCARDLESS_ALIASES,
            excluded_types=["payout", "refund"],
            narration_keywords=["gocardless"],
        ),
        ReconciliationSource.BANKINTER_EUR.value: SourceConfig(
            source=ReconciliationSource.BANKINTER_EUR.value,
            display_name="Bankinter EUR",
            kind=SourceKind.BANK,
            priority=10,
            reliable_email=False,
            metadata_aliases=_BANK_ALIASES,
        ),
        ReconciliationSource.CHASE_USD.value: SourceConfig(
            source=ReconciliationSource.CHASE_USD.value,
            display_name="Chase USD",
            kind=SourceKind.BANK,
            priority=11,
            currency="USD",
            reliable_email=False,
            metadata_aliases=_BANK_ALIASES,
        ),
        ReconciliationSource.LEDGER_ACTUALS.value: SourceConfig(
            source=ReconciliationSource.LEDGER_ACTUALS.value,
            display_name="Ledger Actuals",
            kind=SourceKind.LEDGER,
            priority=20,
            reliable_email=False,
            metadata_aliases=_LEDGER_ALIASES,
        ),
    }

    def __init__(self):
        self._configs = {
            key: replace(
                cfg,
                metadata_aliases=dict(cfg.metadata_aliases),
                excluded_types=list(cfg.excluded_types),
                narration_keywords=list(cfg.narration_keywords),
            )
            for key, cfg in self._default_configs.items()
        }

    def get_config(self, source: SourceId) -> Optional[SourceConfig]:
        """Get configuration for a source."""
        return self._configs.get(_key(source))

    def get_all_configs(self) -> List[SourceConfig]:
        """Get all source configurations, in priority order."""
        return sorted(self._configs.values(), key=lambda c: c.priority)

    def get_enabled_sources(self) -> List[str]:
        """Get list of enabled sources."""
        return [cfg.source for cfg in self.get_all_configs() if cfg.enabled]

    def sources_of_kind(self, kind: SourceKind) -> List[str]:
        """Enabled sources of one kind."""
        return [
            cfg.source for cfg in self.get_all_configs()
            if cfg.enabled and cfg.kind == kind
        ]

    def gateway_sources(self) -> List[str]:
        return self.sources_of_kind(SourceKind.GATEWAY)

    def bank_sources(self) -> List[str]:
        return self.sources_of_kind(SourceKind.BANK)

    def ledger_sources(self) -> List[str]:
        return self.sources_of_kind(SourceKind.LEDGER)

    def has_reliable_email(self, source: SourceId) -> bool:
        """Unknown sources are treated as lacking reliable email."""
        cfg = self.get_config(source)
        return cfg.reliable_email if cfg else False

    def aliases_for(self, source: SourceId) -> Dict[str, str]:
        cfg = self.get_config(source)
        return cfg.metadata_aliases if cfg else {}

    def excluded_types(self, source: SourceId) -> List[str]:
        cfg = self.get_config(source)
        return cfg.excluded_types if cfg else []

    def payout_keywords(self, currency: Optional[str] = None) -> Dict[str, List[str]]:
        """
        Narration keywords per gateway source, for bank payout detection.

        Args:
            currency: Only return gateways settling in this currency
        """
        return {
            cfg.source: list(cfg.narration_keywords)
            for cfg in self.get_all_configs()
            if cfg.enabled
            and cfg.kind == SourceKind.GATEWAY
            and cfg.narration_keywords
            and (currency is None or cfg.currency == currency)
        }


# Global registry instance
source_registry = SourceRegistry()
