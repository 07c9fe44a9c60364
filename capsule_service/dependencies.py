"""
FastAPI dependencies for the shared ledger clients.

The clients are built once in the application lifespan and stored on
app.state; routes receive them through these dependencies.
"""

from fastapi import Request

from capsule_service.config import Settings, settings
from capsule_service.services.ledger.enhanced_history import EnhancedHistoryClient
from capsule_service.services.ledger.rpc_client import LedgerRpcClient


def get_settings() -> Settings:
    return settings


def get_ledger_client(request: Request) -> LedgerRpcClient:
    return request.app.state.ledger_client


def get_enhanced_history(request: Request) -> EnhancedHistoryClient | None:
    return getattr(request.app.state, "enhanced_history", None)
