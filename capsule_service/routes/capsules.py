"""
Capsule API Routes
Read-only dashboard endpoints: indexed capsule table and single-capsule detail.
"""

import time

from fastapi import APIRouter, Depends, HTTPException, status

from capsule_service.config import Settings
from capsule_service.dependencies import get_enhanced_history, get_ledger_client, get_settings
from capsule_service.infrastructure.observability.logging import get_logger
from capsule_service.models.api.capsule_response import (
    CapsuleDetailResponse,
    CapsuleEventResponse,
    CapsuleIndexResponse,
    CapsuleResponse,
    IndexSummaryResponse,
    TokenDeltaResponse,
)
from capsule_service.models.domain.capsule_domain import Capsule, CapsuleEvent
from capsule_service.services.capsules.account_decoder import MalformedAccountError, decode_capsule_account
from capsule_service.services.capsules.capsule_indexer import CapsuleIndexer
from capsule_service.services.capsules.ledger_scanner import LedgerScanner
from capsule_service.services.ledger.addresses import parse_pubkey
from capsule_service.services.ledger.cancellation import CancellationToken
from capsule_service.services.ledger.enhanced_history import EnhancedHistoryClient
from capsule_service.services.ledger.rpc_client import LedgerRpcClient, LedgerRpcError

logger = get_logger(__name__)

router = APIRouter(prefix="/api/capsules", tags=["capsules"])


def _event_response(event: CapsuleEvent) -> CapsuleEventResponse:
    token_delta = None
    if event.token_delta is not None:
        token_delta = TokenDeltaResponse(
            mint=event.token_delta.mint,
            amount=event.token_delta.amount,
            display=event.token_delta.display(),
        )
    return CapsuleEventResponse(
        signature=event.signature,
        block_time=event.block_time,
        status=event.status.value,
        kind=event.kind.value,
        capsule_address=event.capsule_address,
        owner=event.owner_address,
        sol_delta=event.sol_delta,
        token_delta=token_delta,
        payload_size=event.payload_size,
    )


def _capsule_response(
    address: str, capsule: Capsule, status_label: str, events: list[CapsuleEvent] | tuple = ()
) -> CapsuleResponse:
    return CapsuleResponse(
        capsule_address=address,
        owner=str(capsule.owner),
        status=status_label,
        is_active=capsule.is_active,
        inactivity_period=capsule.inactivity_period,
        last_activity=capsule.last_activity,
        executed_at=capsule.executed_at,
        payload_size=len(capsule.intent_data),
        mint=str(capsule.mint) if capsule.mint else None,
        latest_signature=events[0].signature if events else None,
        events=[_event_response(e) for e in events],
    )


@router.get("", response_model=CapsuleIndexResponse)
async def list_capsules(
    client: LedgerRpcClient = Depends(get_ledger_client),
    enhanced_history: EnhancedHistoryClient | None = Depends(get_enhanced_history),
    settings: Settings = Depends(get_settings),
):
    """Present-state capsule table with event histories and summary counters."""
    scanner = LedgerScanner(
        client,
        enhanced_history=enhanced_history,
        page_size=settings.SCAN_PAGE_SIZE,
        max_pages=settings.SCAN_MAX_PAGES,
    )
    indexer = CapsuleIndexer(client, scanner, settings.PROGRAM_ID)

    try:
        index = await indexer.build_index(cancel=CancellationToken.with_timeout(settings.INDEX_DEADLINE_SECONDS))
    except LedgerRpcError as e:
        logger.error("Capsule index failed", error=str(e), method=e.method)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to load on-chain capsule data. Please check RPC connectivity.",
        )

    summary = index.summary
    return CapsuleIndexResponse(
        capsules=[
            _capsule_response(row.address, row.capsule, row.status.value, row.events)
            for row in index.capsules
        ],
        events=[_event_response(e) for e in index.event_rows],
        summary=IndexSummaryResponse(
            total=summary.total_events,
            active=summary.active,
            executed=summary.executed,
            expired=summary.expired,
            proofs=summary.execute_succeeded,
            success_rate=summary.success_rate,
        ),
        generated_at=index.generated_at,
        truncated=index.truncated,
    )


@router.get("/{address}", response_model=CapsuleDetailResponse)
async def get_capsule(
    address: str,
    client: LedgerRpcClient = Depends(get_ledger_client),
    settings: Settings = Depends(get_settings),
):
    """Decode one capsule account and report who currently owns it."""
    if parse_pubkey(address) is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid address")

    try:
        account = await client.get_account_info(address)
    except LedgerRpcError as e:
        logger.error("Capsule lookup failed", address=address, error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Ledger RPC unavailable")

    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Capsule not found")

    try:
        capsule = decode_capsule_account(account.data, address)
    except MalformedAccountError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return CapsuleDetailResponse(
        capsule=_capsule_response(address, capsule, capsule.display_status(int(time.time())).value),
        account_owner=account.owner,
        delegated=account.owner == settings.DELEGATION_PROGRAM_ID,
    )
