# capsule_service/routes/health.py
"""
Health check endpoints with ledger RPC monitoring.
"""

import time

from fastapi import APIRouter, Depends

from capsule_service.config import Settings
from capsule_service.dependencies import get_ledger_client, get_settings
from capsule_service.infrastructure.observability.logging import log_health_check
from capsule_service.services.crank.signer import ConfigurationError, load_crank_keypair
from capsule_service.services.ledger.addresses import parse_pubkey
from capsule_service.services.ledger.rpc_client import LedgerRpcClient

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "capsule-service"}


@router.get("/readyz")
async def readyz(
    client: LedgerRpcClient = Depends(get_ledger_client),
    settings: Settings = Depends(get_settings),
):
    """
    Readiness check: ledger RPC reachability plus configuration sanity.
    """
    checks = {}
    overall_ok = True

    # 1) Ledger RPC health check
    t0 = time.time()
    try:
        rpc_ok = await client.get_health()
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["ledger_rpc"] = {"ok": rpc_ok, "latency_ms": latency_ms}
        log_health_check("ledger_rpc", rpc_ok, latency_ms)
        overall_ok = overall_ok and rpc_ok
    except Exception as e:
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["ledger_rpc"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": latency_ms,
        }
        log_health_check("ledger_rpc", False, latency_ms, error=str(e))
        overall_ok = False

    # 2) Configuration checks
    config_issues = []

    if parse_pubkey(settings.PROGRAM_ID) is None:
        config_issues.append("PROGRAM_ID is not a valid address")

    if parse_pubkey(settings.DELEGATION_PROGRAM_ID) is None:
        config_issues.append("DELEGATION_PROGRAM_ID is not a valid address")

    if settings.PLATFORM_FEE_RECIPIENT and parse_pubkey(settings.PLATFORM_FEE_RECIPIENT) is None:
        config_issues.append("PLATFORM_FEE_RECIPIENT is not a valid address")

    try:
        load_crank_keypair(settings.CRANK_WALLET_PRIVATE_KEY)
        crank_ready = True
    except ConfigurationError:
        crank_ready = False

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues if config_issues else None,
        "crank_signer_configured": crank_ready,
        "cron_secret_configured": bool(settings.CRON_SECRET),
        "enhanced_history": settings.enhanced_history_enabled(),
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
