"""
Direct Ingest – FastAPI server with daily sync scheduler.

Runs Uvicorn on port 9001. Scheduler syncs every active connection once a day.

  pip install -e .
  uvicorn server:app --host 0.0.0.0 --port 9001

  Optional .env: SYNC_SCHEDULE_TIMEZONE, SYNC_SCHEDULE_HOUR, SYNC_SCHEDULE_MINUTE (default 05:00 Europe/Moscow).
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Body, FastAPI, HTTPException
from pydantic import BaseModel

from config import SYNC_SCHEDULE_HOUR, SYNC_SCHEDULE_MINUTE, SYNC_SCHEDULE_TIMEZONE
from sync import ConnectionLocks, SyncAlreadyRunning

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# Scheduler and state (set in lifespan)
_scheduler = None
_last_sync_result: Optional[dict] = None
# Shared by the scheduled job and manual triggers so the same connection never syncs twice at once
_locks = ConnectionLocks()


def _summary(reports) -> dict:
    return {
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "connections": len(reports),
        "ok": sum(1 for r in reports if r.ok),
        "partial": [r.connection_id for r in reports if r.ok and r.partial],
        "errored": [r.connection_id for r in reports if not r.ok and not r.skipped],
        "reports": [r.as_dict() for r in reports],
    }


def _run_daily_sync() -> None:
    """Sync all active connections over the rolling window. Called by scheduler."""
    global _last_sync_result
    from snowflake_connection import get_connection
    from storage import SnowflakeStore
    from sync import build_pipeline_config, sync_all_connections

    try:
        with get_connection() as conn:
            reports = sync_all_connections(build_pipeline_config(SnowflakeStore(conn=conn)), locks=_locks)
    except Exception as e:
        logger.exception("Scheduled daily sync failed: %s", e)
        _last_sync_result = {"status": "error", "error": str(e), "finished_at": datetime.now(timezone.utc).isoformat()}
        raise
    _last_sync_result = {"status": "ok", **_summary(reports)}
    logger.info(
        "Scheduled daily sync completed: %s/%s connections ok",
        _last_sync_result["ok"], _last_sync_result["connections"],
    )


def _get_scheduler():
    from apscheduler.schedulers.background import BackgroundScheduler

    sched = BackgroundScheduler(timezone=SYNC_SCHEDULE_TIMEZONE)
    sched.add_job(
        _run_daily_sync,
        trigger="cron",
        hour=SYNC_SCHEDULE_HOUR,
        minute=SYNC_SCHEDULE_MINUTE,
        id="daily_sync",
        max_instances=1,
        coalesce=True,
    )
    return sched


def _format_time_until(next_run: Optional[datetime]) -> str:
    """Return human-readable string: e.g. '5h 23m' or '23 minutes' or '< 1 minute'."""
    if not next_run:
        return "unknown"
    now = datetime.now(timezone.utc)
    next_utc = next_run.astimezone(timezone.utc) if next_run.tzinfo else next_run.replace(tzinfo=timezone.utc)
    total_seconds = max(0, (next_utc - now).total_seconds())
    hours = int(total_seconds // 3600)
    minutes = int((total_seconds % 3600) // 60)
    if hours >= 1:
        return f"{hours}h {minutes}m" if minutes else f"{hours} hours"
    if minutes >= 1:
        return f"{minutes} minutes"
    return "< 1 minute"


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _scheduler
    _scheduler = _get_scheduler()
    _scheduler.start()
    job = _scheduler.get_job("daily_sync")
    next_run = job.next_run_time if job else None
    logger.info(
        "Scheduler started: daily sync at %02d:%02d %s; next run in %s (%s)",
        SYNC_SCHEDULE_HOUR,
        SYNC_SCHEDULE_MINUTE,
        SYNC_SCHEDULE_TIMEZONE,
        _format_time_until(next_run),
        next_run.isoformat() if next_run else "?",
    )
    yield
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
    logger.info("Scheduler stopped.")


app = FastAPI(
    title="Direct Ingest",
    description="Daily sync of campaign, ad group and ad performance with per-goal conversions to Snowflake.",
    lifespan=lifespan,
)


@app.get("/health")
def health():
    """Health check for load balancers / readiness."""
    return {"status": "ok", "service": "direct-ingest"}


@app.get("/schedule")
def schedule():
    """Return current schedule, next run time and the last scheduled result."""
    if not _scheduler:
        return {"scheduler": "not_running", "schedule": None, "last_sync": _last_sync_result}
    job = _scheduler.get_job("daily_sync")
    next_run = job.next_run_time if job else None
    return {
        "scheduler": "running",
        "schedule": {
            "timezone": SYNC_SCHEDULE_TIMEZONE,
            "hour": SYNC_SCHEDULE_HOUR,
            "minute": SYNC_SCHEDULE_MINUTE,
            "next_run": next_run.isoformat() if next_run else None,
            "next_run_in": _format_time_until(next_run),
        },
        "last_sync": _last_sync_result,
    }


class SyncRequest(BaseModel):
    connection_id: Optional[str] = None  # default: all active connections
    days: Optional[int] = None  # window length ending today; default SYNC_WINDOW_DAYS


@app.post("/sync")
def trigger_sync(body: Optional[SyncRequest] = Body(None)):
    """
    Run sync once for one connection or for all active ones.
    Optional body: {"connection_id": "..."} and/or {"days": 30}.
    """
    from snowflake_connection import get_connection
    from storage import SnowflakeStore
    from sync import SyncOrchestrator, build_pipeline_config, sync_all_connections

    if body and body.days is not None and body.days < 1:
        raise HTTPException(status_code=400, detail="days must be >= 1")
    overrides = {"window_days": body.days} if body and body.days is not None else {}
    try:
        with get_connection() as conn:
            config = build_pipeline_config(SnowflakeStore(conn=conn), **overrides)
            if body and body.connection_id:
                reports = [SyncOrchestrator(config, _locks).run(body.connection_id)]
            else:
                reports = sync_all_connections(config, locks=_locks)
    except SyncAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.exception("Manual sync failed: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "ok", **_summary(reports)}
