import asyncio
import os
from typing import Awaitable, Callable

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal, get_db, init_db
from app.logging_config import get_logger, setup_logging
from app.routers import admin, webhook
from app.runtime import get_runtime
from app.services import followup_service, history_service
from app.services.alert_service import alert_error
from app.services.conversation_service import clear_expired_conversations
from app.services.health_service import check_and_heal_followups, get_system_health
from app.services.tracking_service import cleanup_tracking

setup_logging(settings.log_level)

app = FastAPI(
    title="GPTWhats API",
    description="Backend service for the GPTWhats WhatsApp assistant",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(admin.router)

worker_logger = get_logger("workers")
_worker_tasks: list[asyncio.Task] = []


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _are_workers_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("WORKERS_ENABLED"), default=settings.workers_enabled)


def run_compaction() -> dict:
    """Drop stale rows and in-memory entries past their retention."""
    runtime = get_runtime()
    db = SessionLocal()
    try:
        results = {
            "conversations_removed": clear_expired_conversations(db),
            "tracking_removed": cleanup_tracking(db, days=settings.tracking_retention_days),
            "queue_removed": followup_service.cleanup_queue(db),
            "history_removed": history_service.cleanup_history(db),
        }
        db.commit()
        results["heal"] = check_and_heal_followups(db)["healed_count"]
    finally:
        db.close()
    results["loop_entries_pruned"] = runtime.loop_guard.prune()
    results["finalization_cache_pruned"] = runtime.classifier.prune_cache()
    return results


async def _compaction_job() -> dict:
    return run_compaction()


async def _periodic_loop(name: str, interval_seconds: float, job: Callable[[], Awaitable[dict]]) -> None:
    while True:
        try:
            await asyncio.sleep(max(interval_seconds, 0.1))
            results = await job()
            worker_logger.debug(f"{name} tick", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                f"{name} loop failed",
                extra={"context": {"error": str(exc)}},
                exc_info=True,
            )
            alert_error(f"{name} loop failed", {"error": str(exc)[:200]})


@app.on_event("startup")
async def start_workers() -> None:
    if not _are_workers_enabled():
        return
    init_db()
    runtime = get_runtime()
    if _worker_tasks:
        return
    _worker_tasks.extend(
        [
            asyncio.create_task(runtime.dispatcher.run(), name="inbound-dispatcher"),
            asyncio.create_task(
                _periodic_loop("followup_sweep", settings.followup_sweep_interval_seconds, runtime.scheduler.process_queue)
            ),
            asyncio.create_task(
                _periodic_loop("pending_sweep", settings.pending_sweep_interval_seconds, runtime.pending_sweeper.sweep)
            ),
            asyncio.create_task(_periodic_loop("compaction", settings.compaction_interval_seconds, _compaction_job)),
        ]
    )
    worker_logger.info("Background workers started", extra={"context": {"workers": len(_worker_tasks)}})


@app.on_event("shutdown")
async def stop_workers() -> None:
    if not _worker_tasks:
        return
    for task in _worker_tasks:
        task.cancel()
    await asyncio.gather(*_worker_tasks, return_exceptions=True)
    _worker_tasks.clear()
    await get_runtime().queue.close()
    worker_logger.info("Background workers stopped")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/details")
def health_details(db: Session = Depends(get_db)):
    return {"status": "ok", **get_system_health(db)}
