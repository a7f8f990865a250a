"""
Description Name Extractor

Pulls a payer name out of free-text bank narrations.

Narration grammars are an ordered list of NarrationRule entries; the first
rule that matches wins. New bank formats are added by appending a rule,
without touching the matching cascade.

Rows no rule understands are "unextractable" and are bucketed into a
reporting category (paypal, amex, remesa, ...). Categories are never used
for matching.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple

from reconciliation.normalisation import normalize_name


@dataclass(frozen=True)
class NarrationRule:
    """A named narration grammar with one capture group holding the payer."""
    name: str
    pattern: Pattern

    def extract(self, narration: str) -> Optional[str]:
        match = self.pattern.search(narration)
        if not match:
            return None
        captured = match.group(1).strip()
        return captured or None


# Labels that can follow the originator name in US wire narrations
_WIRE_LABELS = (
    r"ORIG ID|DESC DATE|CO ENTRY DESCR|SEC|TRACE#|EED|IND ID|IND NAME|TRN"
    r"|ORIG BANK|B/O|BNF|REF|OBI"
)

DEFAULT_RULES: Tuple[NarrationRule, ...] = (
    # Domestic transfer: "Transf/NAME", "Trans.inm/NAME", "Trans inm/NAME", "Trans/NAME"
    NarrationRule("transfer", re.compile(r"trans(?:f|\.?\s*inm)?/(.+)", re.IGNORECASE)),
    # International transfer prefix
    NarrationRule("mxiso", re.compile(r"^mxiso\s+(.+)", re.IGNORECASE)),
    # US wire: "ORIG CO NAME:NAME ORIG ID:..."
    NarrationRule(
        "orig-co-name",
        re.compile(rf"ORIG CO NAME:\s*(.+?)(?=\s+(?:{_WIRE_LABELS})\s*:|\s*$)", re.IGNORECASE),
    ),
)

# Payment processors showing up as the "payer" are not customers
GATEWAY_NAMES = ("paypal", "stripe", "gocardless", "braintree", "american express")


class UnextractableCategory(str, Enum):
    PAYPAL = "paypal"
    AMEX = "amex"
    REMESA = "remesa"
    GOCARDLESS = "gocardless"
    STRIPE = "stripe"
    INTERCOMPANY = "intercompany"
    OTHER = "other"


class NameExtractor:
    """
    Applies narration rules in order.

    Args:
        rules: Ordered rules; defaults to the transfer, mxiso and wire grammars
        intercompany_keywords: Narration fragments marking transfers between
            group companies
    """

    def __init__(
        self,
        rules: Optional[Sequence[NarrationRule]] = None,
        intercompany_keywords: Iterable[str] = ("dsd",),
    ):
        self.rules: List[NarrationRule] = list(rules if rules is not None else DEFAULT_RULES)
        self.intercompany_keywords = [k.lower() for k in intercompany_keywords if k]

    def add_rule(self, rule: NarrationRule, position: Optional[int] = None):
        if position is None:
            self.rules.append(rule)
        else:
            self.rules.insert(position, rule)

    def extract_with_rule(self, narration: Optional[str]) -> Optional[Tuple[str, str]]:
        """Return (payer name, rule name) for the first matching rule."""
        text = (narration or "").strip()
        if not text:
            return None
        for rule in self.rules:
            name = rule.extract(text)
            if name:
                return name, rule.name
        return None

    def extract(self, narration: Optional[str]) -> Optional[str]:
        """Payer name as written in the narration, or None."""
        hit = self.extract_with_rule(narration)
        return hit[0] if hit else None

    def extract_customer_name(self, narration: Optional[str]) -> Optional[Tuple[str, str]]:
        """
        Like extract_with_rule but drops payment processors posing as payers.

        Returns:
            (normalized name, rule name), or None
        """
        hit = self.extract_with_rule(narration)
        if not hit:
            return None
        normalized = normalize_name(hit[0])
        if not normalized or is_gateway_name(normalized):
            return None
        return normalized, hit[1]

    def categorise_unextractable(self, narration: Optional[str]) -> UnextractableCategory:
        d = (narration or "").lower()
        if "paypal" in d:
            return UnextractableCategory.PAYPAL
        if "american express" in d or "amex" in d:
            return UnextractableCategory.AMEX
        if "remesa" in d or "abono" in d:
            return UnextractableCategory.REMESA
        if "gocardless" in d:
            return UnextractableCategory.GOCARDLESS
        if "stripe" in d:
            return UnextractableCategory.STRIPE
        if any(k in d for k in self.intercompany_keywords):
            return UnextractableCategory.INTERCOMPANY
        return UnextractableCategory.OTHER


def is_gateway_name(name: str) -> bool:
    normalized = normalize_name(name)
    return any(g in normalized for g in GATEWAY_NAMES)


def match_customer_name(
    name: Optional[str],
    known_names: Iterable[str],
    min_length: int = 5,
) -> Optional[str]:
    """
    Resolve a payer name against normalized customer names.

    Exact equality wins. Otherwise the first known name where either string
    contains the other, but only when both names have at least `min_length`
    characters.    """
    key = normalize_name(name)
    if not key:
        return None

    names = known_names if isinstance(known_names, (set, frozenset, dict)) else list(known_names)
    if key in names:
        return key
    if len(key) < min_length:
        return None

    for candidate in names:
        if len(candidate) >= min_length and (key in candidate or candidate in key):
            return candidate
    return None


default_extractor = NameExtractor()
