"""
Matching Rules Module
"""

from .cascade import (
    CascadeOutcome,
    CascadeSettings,
    MatchCascade,
    MatchStrategyRule,
    DEFAULT_STRATEGIES,
)
from .disbursement_rules import DisbursementMatcher, DisbursementOutcome, group_by_disbursement

__all__ = [
    "CascadeOutcome",
    "CascadeSettings",
    "MatchCascade",
    "MatchStrategyRule",
    "DEFAULT_STRATEGIES",
    "DisbursementMatcher",
    "DisbursementOutcome",
    "group_by_disbursement",
]
