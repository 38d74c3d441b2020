"""
Direct Ingest – sync of one or all connections.

Per connection the run walks a fixed state machine:
  idle -> checking_auth -> [refreshing_auth] -> discovering_campaigns
       -> fetching_level(campaign) -> fetching_level(ad_group) -> fetching_level(ad) -> done | errored
Each level fetches performance and per-goal conversions, merges them and rewrites the
connection's rows for the dates the batch covers. A failing level is logged and skipped; auth failure
without a refresh path, a blown wall-clock ceiling or a cancel end the run as errored.

  pip install -e .
  copy env.example.txt to .env and set credentials
  python sync.py [--connection ID] [--days 90]
"""

import argparse
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import httpx

from cancellation import CancelToken, RunDeadlineExceeded, SyncCancelled
from config import DIRECT_API_URL, PipelineConfig
from direct_api import AuthExpired, CampaignDirectory, CredentialProvider
from fetchers import FetchRequest, GoalConversionFetcher, PerformanceFetcher
from merger import group_by_goal, merge_with_stats
from models import LEVELS, AdContent, Connection, ConnectionStatus, Level, MergedRecord
from report_client import REASON_TIMEOUT, ReportJobClient, ReportJobFailure
from writer import IdempotentWriter, WriteResult

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    CHECKING_AUTH = "checking_auth"
    REFRESHING_AUTH = "refreshing_auth"
    DISCOVERING_CAMPAIGNS = "discovering_campaigns"
    FETCHING_LEVEL = "fetching_level"
    DONE = "done"
    ERRORED = "errored"


class SyncAlreadyRunning(Exception):
    pass


@dataclass
class SyncReport:
    connection_id: str
    state: SyncState = SyncState.IDLE
    transitions: List[str] = field(default_factory=list)
    window_start: Optional[date] = None
    window_end: Optional[date] = None
    campaigns: int = 0
    levels: Dict[str, WriteResult] = field(default_factory=dict)
    failed_levels: Dict[str, str] = field(default_factory=dict)
    # level -> goal_id -> failure reason; the level still completed with the other goals
    failed_goals: Dict[str, Dict[str, str]] = field(default_factory=dict)
    dropped_rows: int = 0
    ad_contents: int = 0
    ad_contents_error: Optional[str] = None
    skipped: bool = False
    error: Optional[str] = None
    retryable: Optional[bool] = None

    def transition(self, state: SyncState, level: Optional[Level] = None) -> None:
        self.state = state
        label = f"{state.value}({level.value})" if level is not None else state.value
        self.transitions.append(label)
        logger.info("connection=%s -> %s", self.connection_id, label)

    @property
    def ok(self) -> bool:
        return self.state is SyncState.DONE

    @property
    def partial(self) -> bool:
        return bool(self.failed_levels or self.failed_goals)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "state": self.state.value,
            "transitions": list(self.transitions),
            "window": [
                self.window_start.isoformat() if self.window_start else None,
                self.window_end.isoformat() if self.window_end else None,
            ],
            "campaigns": self.campaigns,
            "levels": {
                name: {"performance_rows": r.performance_rows, "conversion_rows": r.conversion_rows, "deleted_rows": r.deleted_rows}
                for name, r in self.levels.items()
            },
            "failed_levels": dict(self.failed_levels),
            "failed_goals": {lvl: dict(goals) for lvl, goals in self.failed_goals.items()},
            "dropped_rows": self.dropped_rows,
            "ad_contents": self.ad_contents,
            "ad_contents_error": self.ad_contents_error,
            "skipped": self.skipped,
            "error": self.error,
            "retryable": self.retryable,
        }


class ConnectionLocks:
    """Per-connection mutual exclusion; a second sync of the same connection is rejected, not queued."""

    def __init__(self):
        self._guard = threading.Lock()
        self._held = set()

    def is_held(self, connection_id: str) -> bool:
        with self._guard:
            return connection_id in self._held

    @contextmanager
    def hold(self, connection_id: str):
        with self._guard:
            if connection_id in self._held:
                raise SyncAlreadyRunning(f"connection {connection_id} is already syncing")
            self._held.add(connection_id)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(connection_id)


_NON_RETRYABLE_MARKERS = (
    "invalid_token",
    "token expired",
    "unauthorized",
    "forbidden",
    "access denied",
    "account blocked",
    "account suspended",
    "please reconnect",
    "reconnect the account",
)
_RETRYABLE_MARKERS = (
    "network",
    "timeout",
    "rate limit",
    "too many requests",
    "service unavailable",
    "503",
    "502",
    "connection reset",
    "name or service not known",
)


def is_retryable_error(exc: BaseException) -> bool:
    """Whether a failed run is worth repeating later without user action."""
    if isinstance(exc, (AuthExpired, SyncAlreadyRunning)):
        return False
    if isinstance(exc, ReportJobFailure) and exc.reason == REASON_TIMEOUT:
        return True
    if isinstance(exc, (httpx.TransportError, RunDeadlineExceeded)):
        return True
    message = str(exc).lower()
    if any(marker in message for marker in _NON_RETRYABLE_MARKERS):
        return False
    if any(marker in message for marker in _RETRYABLE_MARKERS):
        return True
    return True


class SyncOrchestrator:
    def __init__(self, config: PipelineConfig, locks: Optional[ConnectionLocks] = None):
        self._config = config
        self._store = config.store
        self._credentials = config.credentials
        self._directory = config.directory
        self._locks = locks or ConnectionLocks()
        self._writer = IdempotentWriter(config.store)
        self._performance = PerformanceFetcher(config.report_client, config.retry)
        self._conversions = GoalConversionFetcher(
            config.report_client,
            config.retry,
            attribution_model=config.attribution_model,
            concurrency=config.goal_concurrency,
        )

    def run(
        self,
        connection: Union[str, Connection],
        token: Optional[CancelToken] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> SyncReport:
        if isinstance(connection, str):
            record = self._store.get_connection_record(connection)
            if record is None:
                raise ValueError(f"connection {connection} not found")
            connection = record

        report = SyncReport(connection_id=connection.id)
        if connection.status is not ConnectionStatus.ACTIVE:
            logger.info("connection=%s is %s, skipping", connection.id, connection.status.value)
            report.skipped = True
            return report

        with self._locks.hold(connection.id):
            token = token or CancelToken(self._config.run_timeout_seconds)
            report.window_end = date_to or date.today()
            report.window_start = date_from or report.window_end - timedelta(days=self._config.window_days)
            logger.info(
                "Syncing connection=%s (login=%s) window=%s..%s goals=%s",
                connection.id, connection.login, report.window_start, report.window_end, len(connection.goal_ids),
            )
            try:
                return self._run(connection, report, token)
            except AuthExpired as e:
                logger.error("connection=%s needs to reconnect: %s", connection.id, e)
                return self._errored(connection, report, e)
            except (SyncCancelled, RunDeadlineExceeded) as e:
                logger.error("connection=%s sync stopped: %s", connection.id, e)
                return self._errored(connection, report, e)
            except Exception as e:
                logger.exception("connection=%s sync failed: %s", connection.id, e)
                return self._errored(connection, report, e)

    def _run(self, connection: Connection, report: SyncReport, token: CancelToken) -> SyncReport:
        access_token = self._authenticate(connection, report)
        token.check()

        report.transition(SyncState.DISCOVERING_CAMPAIGNS)
        campaigns = self._directory.list_campaigns(connection, access_token)
        report.campaigns = len(campaigns)
        if not campaigns:
            logger.info("connection=%s has no campaigns; nothing to write", connection.id)
            return self._done(connection, report)
        self._store.upsert_campaigns(connection.id, campaigns)

        request = FetchRequest(
            access_token=access_token,
            login=connection.login,
            date_from=report.window_start.isoformat(),
            date_to=report.window_end.isoformat(),
            campaign_ids=[c.id for c in campaigns],
        )
        for level in LEVELS:
            token.check()
            report.transition(SyncState.FETCHING_LEVEL, level)
            try:
                self._sync_level(level, connection, request, report, token)
            except (SyncCancelled, RunDeadlineExceeded):
                raise
            except Exception as e:
                report.failed_levels[level.value] = f"{type(e).__name__}: {e}"
                logger.exception("connection=%s level %s failed, continuing: %s", connection.id, level.value, e)
        return self._done(connection, report)

    def _authenticate(self, connection: Connection, report: SyncReport) -> str:
        """Return a usable access token or raise AuthExpired."""
        report.transition(SyncState.CHECKING_AUTH)
        access_token = self._credentials.get_valid_token(
            connection, on_refresh=lambda: report.transition(SyncState.REFRESHING_AUTH)
        )
        if report.state is SyncState.REFRESHING_AUTH:
            self._store.update_connection_tokens(connection.id, connection.access_token, connection.refresh_token)
        return access_token

    def _sync_level(self, level: Level, connection: Connection, request: FetchRequest, report: SyncReport, token: CancelToken) -> None:
        performance = self._performance.fetch(level, request, token)
        conversions = self._conversions.fetch(level, connection.goal_ids, request, token)
        if conversions.failed_goals:
            report.failed_goals[level.value] = dict(conversions.failed_goals)
        records, orphans = merge_with_stats(performance.rows, group_by_goal(conversions.rows))
        report.dropped_rows += performance.dropped + conversions.dropped + orphans

        # Nothing is written once the run is cancelled or out of time
        token.check()
        # Delete range is the batch's own min..max date
        report.levels[level.value] = self._writer.write(records, connection.id)
        if level is Level.AD_GROUP:
            self._store.upsert_ad_groups(connection.id, records)
        elif level is Level.AD:
            self._store.upsert_ads(connection.id, records, self._ad_contents(connection, request, records, report))

    def _ad_contents(self, connection: Connection, request: FetchRequest, records: List[MergedRecord], report: SyncReport) -> Dict[str, AdContent]:
        ad_ids = sorted({r.key.ad_id for r in records if r.key.ad_id})
        if not ad_ids:
            return {}
        try:
            contents = self._directory.list_ad_contents(connection, request.access_token, ad_ids)
        except Exception as e:
            # Stats are already written; texts are picked up on the next run
            logger.warning("connection=%s ad texts unavailable, continuing: %s", connection.id, e)
            report.ad_contents_error = f"{type(e).__name__}: {e}"
            return {}
        report.ad_contents = len(contents)
        return contents

    def _done(self, connection: Connection, report: SyncReport) -> SyncReport:
        now = datetime.now(timezone.utc)
        self._store.update_connection_status(connection.id, ConnectionStatus.ACTIVE, last_sync_at=now)
        connection.status = ConnectionStatus.ACTIVE
        connection.last_sync_at = now
        report.transition(SyncState.DONE)
        if report.partial:
            logger.warning(
                "connection=%s done with partial data: failed levels=%s failed goals=%s",
                connection.id, sorted(report.failed_levels) or "-", report.failed_goals or "-",
            )
        return report

    def _errored(self, connection: Connection, report: SyncReport, exc: BaseException) -> SyncReport:
        report.error = f"{type(exc).__name__}: {exc}"
        report.retryable = is_retryable_error(exc)
        try:
            self._store.update_connection_status(connection.id, ConnectionStatus.ERROR)
            connection.status = ConnectionStatus.ERROR
        except Exception as e:
            logger.exception("connection=%s failed to persist error status: %s", connection.id, e)
        report.transition(SyncState.ERRORED)
        return report


def build_pipeline_config(store: Any = None, **overrides: Any) -> PipelineConfig:
    """Production wiring: Snowflake store and live API clients, settings from .env."""
    if store is None:
        from storage import SnowflakeStore

        store = SnowflakeStore()
    base_url = overrides.pop("api_base_url", DIRECT_API_URL)
    return PipelineConfig(
        store=store,
        credentials=CredentialProvider(),
        directory=CampaignDirectory(base_url=base_url),
        report_client=ReportJobClient(base_url=base_url),
        api_base_url=base_url,
        **overrides,
    )


def sync_all_connections(config: PipelineConfig, locks: Optional[ConnectionLocks] = None) -> List[SyncReport]:
    """Sync every active connection; one connection's failure never stops the others."""
    connections = config.store.list_active_connections()
    if not connections:
        logger.info("No active connections found")
        return []
    logger.info("Found %s active connection(s)", len(connections))
    orchestrator = SyncOrchestrator(config, locks)

    def sync_one(connection: Connection) -> SyncReport:
        try:
            return orchestrator.run(connection)
        except Exception as e:
            logger.exception("Failed to sync connection %s: %s", connection.id, e)
            report = SyncReport(connection_id=connection.id, error=f"{type(e).__name__}: {e}", retryable=is_retryable_error(e))
            report.transition(SyncState.ERRORED)
            return report

    if config.max_workers <= 1:
        reports = [sync_one(c) for c in connections]
    else:
        with ThreadPoolExecutor(max_workers=config.max_workers, thread_name_prefix="sync") as executor:
            reports = list(executor.map(sync_one, connections))
    ok = sum(1 for r in reports if r.ok)
    logger.info("Completed sync for all connections: %s ok, %s not ok", ok, len(reports) - ok)
    return reports


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    parser = argparse.ArgumentParser(description="Direct Ingest sync (standalone)")
    parser.add_argument("--connection", type=str, default=None, help="Single connection id (default: all active)")
    parser.add_argument("--days", type=int, default=None, help="Window length in days ending today (default: SYNC_WINDOW_DAYS)")
    args = parser.parse_args()

    if args.days is not None and args.days < 1:
        logger.error("Invalid --days: %s", args.days)
        sys.exit(1)

    from snowflake_connection import get_connection
    from storage import SnowflakeStore

    overrides = {"window_days": args.days} if args.days is not None else {}
    # One Snowflake connection for the whole run to avoid repeated slow connects
    with get_connection() as conn:
        config = build_pipeline_config(SnowflakeStore(conn=conn), **overrides)
        if args.connection:
            reports = [SyncOrchestrator(config).run(args.connection)]
        else:
            reports = sync_all_connections(config)

    failed = [r for r in reports if not r.ok and not r.skipped]
    for r in reports:
        logger.info("connection=%s state=%s%s", r.connection_id, r.state.value, f" error={r.error}" if r.error else "")
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
