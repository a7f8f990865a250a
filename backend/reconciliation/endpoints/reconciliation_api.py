"""
Reconciliation API Endpoints

REST API for the reconciliation engine:
- GET /api/reconciliation/status - Module status
- GET /api/reconciliation/sources - List configured sources
- POST /api/reconciliation/run - Run the matching cascade
- POST /api/reconciliation/ledger-codes - Backfill ledger codes on gateway transactions
- POST /api/reconciliation/classify-bank - Code bank inflows from narration names
- POST /api/reconciliation/disbursements - Match bank inflows to gateway payouts
- POST /api/reconciliation/sweep - Reset false-positive bank matches

Every POST is a dry run unless `apply` is true.
"""

import logging
from typing import List, Optional
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Header
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database.connection import get_db, get_session_factory
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.repair_service import RepairService
from reconciliation.services.repository import LeaseUnavailableError, RepositoryError
from reconciliation.source_registry import source_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Request Models ====================

class RunRequest(BaseModel):
    """Options shared by every engine run."""
    apply: bool = Field(default=False, description="Write results; dry run when false")
    sample: int = Field(default=15, ge=0, le=500, description="Rows included in the response sample")


class SourceRunRequest(RunRequest):
    sources: Optional[List[str]] = Field(default=None, description="Transaction sources; defaults to all gateways")


class SweepRequest(RunRequest):
    max_days: Optional[int] = Field(default=None, ge=0, description="Maximum bank/disbursement gap in days")


# ==================== Authentication ====================

def verify_internal_auth(
    x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-Api-Key"),
    settings: Settings = Depends(get_settings),
):
    """Verify internal API key authentication."""
    valid_keys = settings.internal_api_keys

    if not valid_keys:
        logger.warning("No internal API keys configured")
        raise HTTPException(status_code=503, detail="Internal authentication not configured")

    if not x_internal_api_key:
        raise HTTPException(status_code=401, detail="Missing X-Internal-Api-Key header")

    if x_internal_api_key not in valid_keys:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return True


# ==================== Dependencies ====================

def get_reconciliation_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> ReconciliationService:
    return ReconciliationService(db, session_factory=get_session_factory(), settings=settings)


def get_repair_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> RepairService:
    return RepairService(db, session_factory=get_session_factory(), settings=settings)


class UnknownSourceError(Exception):
    """A request named a source the registry does not know."""


def validate_sources(sources: Optional[List[str]]) -> Optional[List[str]]:
    if not sources:
        return None
    unknown = [s for s in sources if source_registry.get_config(s) is None]
    if unknown:
        raise UnknownSourceError(f"Unknown sources: {unknown}")
    return sources


async def _run(label: str, call):
    """Map engine failures onto HTTP errors."""
    try:
        return await call()
    except HTTPException:
        raise
    except LeaseUnavailableError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RepositoryError as e:
        logger.error(f"{label} aborted, backing store unavailable: {e}")
        raise HTTPException(status_code=503, detail="Backing store unavailable")
    except UnknownSourceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"{label} failed: {e}")
        raise HTTPException(status_code=500, detail=f"{label} failed")


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get reconciliation module status.

    Returns configuration and availability information.
    """
    return {
        "module": "reconciliation",
        "status": "operational",
        "version": "1.0.0",
        "features": {
            "cascade_matching": True,
            "ledger_code_inference": True,
            "bank_name_classification": True,
            "disbursement_matching": True,
            "false_positive_sweep": True,
        },
        "sources_enabled": source_registry.get_enabled_sources(),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/sources", summary="List supported sources")
async def list_sources():
    """List every configured source with its kind and matching hints."""
    configs = source_registry.get_all_configs()
    return {
        "sources": [cfg.to_dict() for cfg in configs],
        "enabled_count": len(source_registry.get_enabled_sources())
    }


@router.post("/run", summary="Run matching cascade")
async def run_matching(
    request: SourceRunRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Match unreconciled gateway transactions against open invoices.

    Requires internal API key authentication.
    """
    async def call():
        report = await service.run_matching(
            sources=validate_sources(request.sources),
            dry_run=not request.apply,
        )
        return report.to_dict(request.sample)

    return await _run("Reconciliation run", call)


@router.post("/ledger-codes", summary="Backfill ledger codes")
async def run_ledger_codes(
    request: SourceRunRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth: bool = Depends(verify_internal_auth)
):
    async def call():
        report = await service.run_ledger_codes(
            sources=validate_sources(request.sources),
            dry_run=not request.apply,
        )
        return report.to_dict(request.sample)

    return await _run("Ledger-code run", call)


@router.post("/classify-bank", summary="Classify bank inflows by payer name")
async def classify_bank(
    request: RunRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth: bool = Depends(verify_internal_auth)
):
    async def call():
        report = await service.classify_bank_inflows(dry_run=not request.apply)
        return report.to_dict(request.sample)

    return await _run("Bank classification", call)


@router.post("/disbursements", summary="Match gateway disbursements")
async def run_disbursements(
    request: RunRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth: bool = Depends(verify_internal_auth)
):
    async def call():
        report = await service.run_disbursements(dry_run=not request.apply)
        return report.to_dict(request.sample)

    return await _run("Disbursement run", call)


@router.post("/sweep", summary="Reset false-positive bank matches")
async def sweep_false_positives(
    request: SweepRequest,
    service: RepairService = Depends(get_repair_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Reset reconciled bank inflows whose disbursement date is more than
    `max_days` away from the bank date.
    """
    async def call():
        report = await service.sweep_false_positives(
            dry_run=not request.apply,
            max_days=request.max_days,
        )
        return report.to_dict(request.sample)

    return await _run("False-positive sweep", call)
