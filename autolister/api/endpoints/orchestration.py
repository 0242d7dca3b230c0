from fastapi import APIRouter, BackgroundTasks, Body, Depends
from typing import Any, Dict, Optional
import logging

from autolister.api.deps import OrchestratorFactory, get_orchestrator_factory, get_recovery_engine
from autolister.schemas.product import PipelineRunIn
from autolister.services.error_recovery import RecoveryEngine
from autolister.services.job_ledger import new_run_id
from autolister.session_factory import session_factory

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/run", status_code=202)
async def trigger_pipeline_run(
    background_tasks: BackgroundTasks,
    payload: Optional[PipelineRunIn] = Body(default=None),
    build_orchestrator: OrchestratorFactory = Depends(get_orchestrator_factory),
):
    """
    전체 파이프라인(Scrape -> Analyze? -> Generate -> List)을 백그라운드로 실행합니다.
    """
    options = payload or PipelineRunIn()
    run_id = options.run_id or new_run_id()
    logger.info(f"API called: /pipeline/run (runId={run_id}, analyze={options.analyze})")

    async def _run_pipeline():
        try:
            with session_factory() as session:
                orchestrator = build_orchestrator(session)
                summary = await orchestrator.run_full_pipeline(run_id=run_id, analyze=options.analyze)
                logger.info(f"Pipeline run finished: {summary.to_dict()}")
        except Exception as e:
            logger.error(f"Critical error in pipeline run {run_id}: {e}", exc_info=True)

    background_tasks.add_task(_run_pipeline)
    return {"status": "accepted", "runId": run_id, "analyze": options.analyze}


@router.get("/recovery")
def get_recovery_status(recovery: RecoveryEngine = Depends(get_recovery_engine)) -> Dict[str, Any]:
    """
    에러 복구 엔진 상태 (처리한 에러 종류, 빈도)
    """
    return recovery.get_health_status()
