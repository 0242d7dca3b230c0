import argparse
import asyncio
import json
import logging

from autolister.db import SessionLocal, init_db
from autolister.exceptions import PipelineError
from autolister.services.job_ledger import JobLedger
from autolister.services.orchestrator_service import PipelineOrchestrator
from autolister.settings import settings

logger = logging.getLogger(__name__)


def _print(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


async def _run_stage(stage: str, **kwargs):
    with SessionLocal() as session:
        orchestrator = PipelineOrchestrator.from_settings(session, settings)
        return await orchestrator.run_stage(stage, **kwargs)


async def _run_pipeline(analyze: bool):
    with SessionLocal() as session:
        orchestrator = PipelineOrchestrator.from_settings(session, settings)
        return await orchestrator.run_full_pipeline(analyze=analyze)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autolister", description="Trend -> product -> listing pipeline")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run-pipeline", help="Run scrape -> (analyze) -> generate -> list")
    run.add_argument("--analyze", action="store_true", help="Run AI trend analysis after scraping")

    scrape = sub.add_parser("scrape", help="Scan marketplaces and store trend data")
    scrape.add_argument("--marketplace", action="append", dest="marketplaces", help="Marketplace to scan (repeatable)")
    scrape.add_argument("--category", default=None)

    sub.add_parser("analyze", help="Rank recent trends with the AI provider")

    jobs = sub.add_parser("jobs", help="List recorded jobs")
    jobs.add_argument("--status", default="RUNNING")
    jobs.add_argument("--stage", default=None)
    jobs.add_argument("--limit", type=int, default=20)

    sub.add_parser("init-db", help="Create tables without Alembic")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    # 로그 설정
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        if args.command == "run-pipeline":
            summary = asyncio.run(_run_pipeline(args.analyze))
            _print(summary.to_dict())
            return 0 if summary.success else 1
        if args.command == "scrape":
            result = asyncio.run(_run_stage("scrape", marketplaces=args.marketplaces, category=args.category))
            _print({"jobId": result.job_id, "trends": result.trends, "resultsStored": result.results_stored, "failedSources": result.failed_sources})
            return 0
        if args.command == "analyze":
            result = asyncio.run(_run_stage("analyze"))
            _print({"jobId": result.job_id, "dataPoints": result.data_points, "ranked": result.ranked})
            return 0
        if args.command == "jobs":
            with SessionLocal() as session:
                ledger = JobLedger(session)
                if args.stage:
                    rows = [j for j in ledger.list_by_stage(args.stage) if j.status == args.status.upper()][: args.limit]
                else:
                    rows = ledger.list_by_status(args.status, limit=args.limit)
                _print([job.to_dict() for job in rows])
            return 0
        if args.command == "init-db":
            init_db()
            print("Tables created.")
            return 0
    except PipelineError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
