"""
Reconciliation Record Models

Typed shapes for the rows the engine reads and the decisions it makes:
- TransactionRecord / TransactionMetadata: payment-side rows (gateways, banks)
- InvoiceRecord: billing-side rows
- MatchResult: an accepted pairing, executed by the writer

Source-specific metadata keys are resolved onto explicit fields once, when
a row is loaded. Anything without a field lands in a bounded `extensions`
map so matching code never reaches into an open dictionary.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

MAX_EXTENSION_KEYS = 64


# ==================== ENUMS ====================

class MatchStrategy(str, Enum):
    """Evidence used to pair a transaction with an invoice."""
    ORDER_ID = "order_id"
    EMAIL_AMOUNT = "email+amount"
    DOMAIN_AMOUNT_DATE = "domain+amount+date"
    AMOUNT_DATE = "amount+date"
    CUSTOMER_NAME_AMOUNT = "customer_name+amount"
    DISBURSEMENT = "disbursement"


class RecordState(str, Enum):
    """
    Lifecycle of a transaction within and across runs.

    PERMANENTLY_UNMATCHED only lasts for the current run; the next run
    evaluates the row again.
    """
    UNMATCHED = "UNMATCHED"
    MATCHED = "MATCHED"
    RECONCILED = "RECONCILED"
    CORRECTED = "CORRECTED"
    PERMANENTLY_UNMATCHED = "PERMANENTLY_UNMATCHED"


class FacProvenance(str, Enum):
    """Where an inferred financial account code came from."""
    CUSTOMER_NAME = "customer-name"
    EMAIL_DOMAIN = "email-domain"
    SOURCE_DOMINANT = "source-dominant"


class CorrectionCategory(str, Enum):
    PHANTOM_NEGATIVE = "phantom_negative"
    PHANTOM_POSITIVE = "phantom_positive"
    MISSING_VALUE = "missing_value"
    WRONG_VALUE = "wrong_value"


# ==================== RECORDS ====================

class TransactionMetadata(BaseModel):
    """
    Explicit metadata schema for transaction rows.

    Ingestion fields come first, then the provenance fields the engine
    writes back. `extensions` holds the remaining source-specific keys.
    """
    model_config = ConfigDict(extra="forbid")

    # Ingestion fields
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    company_name: Optional[str] = None
    disbursement_date: Optional[date] = None
    financial_account_code: Optional[str] = None
    type: Optional[str] = None

    # Match provenance
    matched_invoice_id: Optional[str] = None
    matched_invoice_number: Optional[str] = None
    matched_invoice_fac: Optional[str] = None
    match_type: Optional[str] = None
    confidence: Optional[int] = Field(default=None, ge=0, le=100)
    match_reasons: Optional[List[str]] = None
    reconciled_at: Optional[datetime] = None
    reconciled_with: Optional[str] = None
    payment_source: Optional[str] = None
    transaction_ids: Optional[List[str]] = None

    # Ledger-code inference
    fac_fallback_source: Optional[str] = None
    fac_fallback_at: Optional[datetime] = None
    fac_name_rule: Optional[str] = None

    # Repair
    corrected_at: Optional[datetime] = None
    corrected_from: Optional[Decimal] = None
    correction_category: Optional[str] = None

    extensions: Dict[str, Any] = Field(default_factory=dict)

    @field_validator(
        "transaction_id", "order_id", "customer_email", "customer_name",
        "company_name", "financial_account_code", "type",
        "matched_invoice_id", "matched_invoice_number", "matched_invoice_fac",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, value):
        if value is None:
            return None
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("disbursement_date", mode="before")
    @classmethod
    def _coerce_date(cls, value):
        # Gateways send either a date or a full timestamp
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
            return value[:10]
        if isinstance(value, datetime):
            return value.date()
        return value

    @field_validator("extensions")
    @classmethod
    def _bounded_extensions(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if len(value) > MAX_EXTENSION_KEYS:
            raise ValueError(f"extensions holds {len(value)} keys, limit is {MAX_EXTENSION_KEYS}")
        return value

    @classmethod
    def from_custom_data(
        cls,
        custom_data: Optional[Mapping[str, Any]],
        aliases: Optional[Mapping[str, str]] = None
    ) -> "TransactionMetadata":
        """
        Build metadata from a raw custom_data map.

        Args:
            custom_data: Stored JSON object for the row
            aliases: Source-specific key -> canonical field name

        Returns:
            Validated metadata; raises pydantic.ValidationError on bad values
        """
        aliases = aliases or {}
        known = set(cls.model_fields) - {"extensions"}
        values: Dict[str, Any] = {}
        extensions: Dict[str, Any] = {}

        raw = dict(custom_data or {})
        for key, value in raw.items():
            if key in known:
                values[key] = value

        for key, value in raw.items():
            if key in known:
                continue
            canonical = aliases.get(key)
            if canonical in known:
                # Canonical keys win over aliases that resolve to the same field
                if values.get(canonical) in (None, ""):
                    values[canonical] = value
            elif key == "extensions" and isinstance(value, dict):
                extensions.update(value)
            else:
                extensions[key] = value

        if len(extensions) > MAX_EXTENSION_KEYS:
            dropped = list(extensions)[MAX_EXTENSION_KEYS:]
            logger.warning(f"Dropping {len(dropped)} metadata extension keys beyond limit")
            extensions = {k: extensions[k] for k in list(extensions)[:MAX_EXTENSION_KEYS]}

        return cls.model_validate({**values, "extensions": extensions})

    @property
    def ledger_code(self) -> Optional[str]:
        """Known account code for the row, inferred or ingested."""
        return self.matched_invoice_fac or self.financial_account_code


class TransactionRecord(BaseModel):
    """A payment-side event from a gateway or bank feed."""
    model_config = ConfigDict(extra="ignore")

    id: str
    source: str
    external_id: Optional[str] = None
    date: date
    amount: Decimal
    currency_code: str = "EUR"
    description: str = ""
    reconciled: bool = False
    metadata: TransactionMetadata = Field(default_factory=TransactionMetadata)

    @field_validator("id", "external_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value) if value is not None else None

    @field_validator("description", mode="before")
    @classmethod
    def _coerce_description(cls, value):
        return value or ""

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_day(cls, value):
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str):
            return value.strip()[:10]
        return value

    @property
    def reference(self) -> str:
        """`<source>:<external id>` used in reconciled_with."""
        ext = self.external_id or self.metadata.transaction_id or self.id
        return f"{self.source}:{ext}"

    @property
    def is_inflow(self) -> bool:
        return self.amount > 0


class InvoiceRecord(BaseModel):
    """A billing-side event from the invoicing ledger."""
    model_config = ConfigDict(extra="ignore")

    id: str
    invoice_number: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    order_id: Optional[str] = None
    total_amount: Decimal = Decimal("0")
    currency_code: str = "EUR"
    financial_account_code: Optional[str] = None
    invoice_date: Optional[date] = None
    status: Optional[str] = None
    reconciled: bool = False
    reconciled_with: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value)

    @field_validator("invoice_number", "order_id", "financial_account_code", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("total_amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value):
        return Decimal("0") if value is None else value

    @field_validator("invoice_date", mode="before")
    @classmethod
    def _coerce_day(cls, value):
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str):
            value = value.strip()
            return value[:10] or None
        return value


# ==================== MATCH RESULTS ====================

@dataclass
class MatchResult:
    """
    An accepted transaction/invoice pairing.

    Never persisted on its own; it is the instruction the writer executes.
    """
    transaction_id: str
    invoice_id: str
    strategy: MatchStrategy
    confidence: int
    reasons: List[str] = field(default_factory=list)
    transaction_ref: str = ""
    transaction_source: str = ""
    invoice_number: Optional[str] = None
    financial_account_code: Optional[str] = None
    amount: Decimal = Decimal("0")
    invoice_amount: Decimal = Decimal("0")
    transaction_date: Optional[date] = None

    def __post_init__(self):
        if not 0 <= self.confidence <= 100:
            raise ValueError(f"confidence {self.confidence} outside [0, 100]")

    @property
    def low_confidence(self) -> bool:
        return self.strategy == MatchStrategy.AMOUNT_DATE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "invoice_id": self.invoice_id,
            "strategy": self.strategy.value,
            "confidence": self.confidence,
            "low_confidence": self.low_confidence,
            "reasons": list(self.reasons),
            "transaction_ref": self.transaction_ref,
            "invoice_number": self.invoice_number,
            "financial_account_code": self.financial_account_code,
            "amount": str(self.amount),
            "invoice_amount": str(self.invoice_amount),
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
        }
