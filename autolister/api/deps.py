from typing import Callable

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from autolister.marketplaces.base import MarketplaceAdapter
from autolister.marketplaces.factory import get_marketplace_adapter
from autolister.services.error_recovery import RecoveryEngine
from autolister.services.orchestrator_service import PipelineOrchestrator
from autolister.settings import Settings, settings

AdapterProvider = Callable[[str], MarketplaceAdapter]
OrchestratorFactory = Callable[[Session], PipelineOrchestrator]


def get_settings() -> Settings:
    return settings


def get_adapter_provider(app_settings: Settings = Depends(get_settings)) -> AdapterProvider:
    """마켓 이름 -> 어댑터. 알 수 없는 이름은 ConfigurationError"""
    return lambda name: get_marketplace_adapter(name, app_settings)


def get_recovery_engine(request: Request) -> RecoveryEngine:
    return request.app.state.recovery


def get_orchestrator_factory(
    app_settings: Settings = Depends(get_settings),
    recovery: RecoveryEngine = Depends(get_recovery_engine),
) -> OrchestratorFactory:
    return lambda db: PipelineOrchestrator.from_settings(db, app_settings, recovery=recovery)
