"""
Candidate Index Builder

Lookup structures over invoice records so each cascade strategy is a
dictionary probe instead of a scan:
- by normalized order id
- by normalized email
- by rounded-amount bucket
- by `domain:roundedAmount`
- by normalized customer name (list per name, names of 3+ characters)

Insertion order is preserved inside every bucket; the cascade relies on it
for first-found resolution.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional

from reconciliation.models import InvoiceRecord
from reconciliation.name_extractor import match_customer_name
from reconciliation.normalisation import (
    amount_bucket,
    email_domain,
    normalize_email,
    normalize_name,
    normalize_order_id,
)

logger = logging.getLogger(__name__)

MIN_NAME_LENGTH = 3


def domain_amount_key(domain: str, amount: Decimal) -> str:
    return f"{domain}:{amount_bucket(amount)}"


@dataclass
class CandidateIndex:
    by_order_id: Dict[str, List[InvoiceRecord]] = field(default_factory=dict)
    by_email: Dict[str, List[InvoiceRecord]] = field(default_factory=dict)
    by_amount_bucket: Dict[int, List[InvoiceRecord]] = field(default_factory=dict)
    by_domain_amount: Dict[str, List[InvoiceRecord]] = field(default_factory=dict)
    by_name: Dict[str, List[InvoiceRecord]] = field(default_factory=dict)
    size: int = 0

    def lookup_order_id(self, order_id: Optional[str]) -> List[InvoiceRecord]:
        key = normalize_order_id(order_id)
        return self.by_order_id.get(key, []) if key else []

    def lookup_email(self, email: Optional[str]) -> List[InvoiceRecord]:
        key = normalize_email(email)
        return self.by_email.get(key, []) if key else []

    def lookup_domain_amount(self, domain: Optional[str], amount: Decimal) -> List[InvoiceRecord]:
        if not domain:
            return []
        return self.by_domain_amount.get(domain_amount_key(domain, amount), [])

    def lookup_amount(self, amount: Decimal, spread: int = 1) -> Iterator[InvoiceRecord]:
        """Invoices in the amount's bucket and `spread` neighbours on each side."""
        bucket = amount_bucket(amount)
        for offset in sorted(range(-spread, spread + 1), key=abs):
            yield from self.by_amount_bucket.get(bucket + offset, [])

    def lookup_name(self, name: Optional[str], min_containment: int = 5) -> List[InvoiceRecord]:
        """
        Exact normalized-name hit first; otherwise mutual containment,
        only for names of at least `min_containment` characters.
        """
        key = match_customer_name(name, self.by_name, min_length=min_containment)
        return self.by_name.get(key, []) if key else []


def build_candidate_index(invoices: Iterable[InvoiceRecord]) -> CandidateIndex:
    """
    Build every lookup map in one pass.

    Missing fields are skipped per map; a record with nothing but an
    amount is still reachable through the amount buckets.
    """
    index = CandidateIndex()

    for invoice in invoices:
        index.size += 1

        order_key = normalize_order_id(invoice.order_id)
        if order_key:
            index.by_order_id.setdefault(order_key, []).append(invoice)

        email = normalize_email(invoice.customer_email)
        if email:
            index.by_email.setdefault(email, []).append(invoice)

        bucket = amount_bucket(invoice.total_amount)
        index.by_amount_bucket.setdefault(bucket, []).append(invoice)

        domain = email_domain(invoice.customer_email)
        if domain:
            index.by_domain_amount.setdefault(
                domain_amount_key(domain, invoice.total_amount), []
            ).append(invoice)

        name = normalize_name(invoice.customer_name)
        if len(name) >= MIN_NAME_LENGTH:
            index.by_name.setdefault(name, []).append(invoice)

    logger.debug(
        f"Candidate index built: {index.size} invoices, "
        f"{len(index.by_order_id)} order ids, {len(index.by_email)} emails, "
        f"{len(index.by_name)} names"
    )
    return index
