"""
Reconciliation Engine Module

Pairs gateway and bank transactions with invoices and repairs earlier
automatic passes:
- Candidate index and ordered matching cascade
- Ledger-code inference by customer name, email domain and source
- Payer-name extraction from bank narrations
- Gateway disbursement matching
- Correction pass against the authoritative ledger extract
- Batched, lease-guarded writer with dry-run preview
"""

from reconciliation.source_registry import (
    ReconciliationSource,
    SourceKind,
    SourceConfig,
    SourceRegistry,
    source_registry
)
from reconciliation.models import (
    CorrectionCategory,
    FacProvenance,
    InvoiceRecord,
    MatchResult,
    MatchStrategy,
    RecordState,
    TransactionMetadata,
    TransactionRecord,
)
from reconciliation.matching_rules import MatchCascade, DisbursementMatcher
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.repair_service import RepairService
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

__all__ = [
    # Source Registry
    'ReconciliationSource',
    'SourceKind',
    'SourceConfig',
    'SourceRegistry',
    'source_registry',
    # Records
    'CorrectionCategory',
    'FacProvenance',
    'InvoiceRecord',
    'MatchResult',
    'MatchStrategy',
    'RecordState',
    'TransactionMetadata',
    'TransactionRecord',
    # Matching
    'MatchCascade',
    'DisbursementMatcher',
    # Services
    'ReconciliationService',
    'RepairService',
    # Router
    'reconciliation_router'
]
