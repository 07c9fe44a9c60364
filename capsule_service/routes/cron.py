"""
Cron API Routes
Crank trigger: executes every eligible capsule.
Call at intervals (e.g. every 5 minutes) from an external scheduler.
"""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from capsule_service.auth.cron_secret import is_cron_request_authorized
from capsule_service.config import Settings
from capsule_service.dependencies import get_ledger_client, get_settings
from capsule_service.infrastructure.observability.logging import get_logger
from capsule_service.models.api.capsule_response import CrankRunResponse
from capsule_service.services.crank.execution_crank import run_crank
from capsule_service.services.crank.signer import ConfigurationError, load_crank_keypair
from capsule_service.services.ledger.cancellation import CancellationToken
from capsule_service.services.ledger.rpc_client import LedgerRpcClient

logger = get_logger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


@router.api_route(
    "/execute-intent",
    methods=["GET", "POST"],
    response_model=CrankRunResponse,
    responses={401: {"description": "Unauthorized"}, 500: {"description": "Crank failure"}},
)
async def execute_intent(
    request: Request,
    client: LedgerRpcClient = Depends(get_ledger_client),
    settings: Settings = Depends(get_settings),
):
    """Run one crank pass and report per-capsule outcomes."""
    if not is_cron_request_authorized(request.headers.get("authorization"), settings.CRON_SECRET):
        logger.warning("Unauthorized crank trigger", client=request.client.host if request.client else None)
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "Unauthorized"})

    try:
        keypair = load_crank_keypair(settings.CRANK_WALLET_PRIVATE_KEY)
    except ConfigurationError as e:
        logger.error("Crank signer misconfigured", setting=e.setting, error=str(e))
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(e)})

    cancel = CancellationToken.with_timeout(settings.CRANK_DEADLINE_SECONDS)
    try:
        result = await run_crank(client, settings, keypair, cancel=cancel)
    except Exception as e:
        logger.error("Crank pass failed", error=str(e), error_type=type(e).__name__)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(e)})

    return CrankRunResponse(
        ok=result.ok,
        eligible_count=result.eligible_count,
        executed_count=result.executed_count,
        errors=result.errors,
        signatures=result.signatures,
        truncated=result.truncated,
    )
