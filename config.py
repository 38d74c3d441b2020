"""
Direct Ingest – config and credentials (from .env in this folder).
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

from dotenv import load_dotenv

# Load .env from this project folder
_ROOT = Path(__file__).resolve().parent
_ENV_FILE = _ROOT / ".env"
if _ENV_FILE.exists():
    load_dotenv(_ENV_FILE)

# Snowflake (AUTH_METHOD PASSWORD | KEYPAIR; KEYPAIR avoids MFA/TOTP)
SNOWFLAKE_ACCOUNT = os.getenv("SNOWFLAKE_ACCOUNT", "")
SNOWFLAKE_USER = os.getenv("SNOWFLAKE_USER", "")
SNOWFLAKE_PASSWORD = os.getenv("SNOWFLAKE_PASSWORD", "")
SNOWFLAKE_AUTH_METHOD = (os.getenv("SNOWFLAKE_AUTH_METHOD", "KEYPAIR") or "KEYPAIR").upper()
SNOWFLAKE_WAREHOUSE = os.getenv("SNOWFLAKE_WAREHOUSE", "")
SNOWFLAKE_DATABASE = os.getenv("SNOWFLAKE_DATABASE", "")
SNOWFLAKE_SCHEMA = os.getenv("SNOWFLAKE_SCHEMA", "PUBLIC")
SNOWFLAKE_ROLE = os.getenv("SNOWFLAKE_ROLE", "")
# KEYPAIR: use SNOWFLAKE_PRIVATE_KEY (inline PEM) or SNOWFLAKE_PRIVATE_KEY_PATH (file path)
SNOWFLAKE_PRIVATE_KEY = os.getenv("SNOWFLAKE_PRIVATE_KEY", "")
SNOWFLAKE_PRIVATE_KEY_PATH = os.getenv("SNOWFLAKE_PRIVATE_KEY_PATH", "")
SNOWFLAKE_PRIVATE_KEY_PASSPHRASE = os.getenv("SNOWFLAKE_PRIVATE_KEY_PASSPHRASE", "")

# Reporting / campaigns API and OAuth
DIRECT_API_URL = os.getenv("DIRECT_API_URL", "https://api.direct.yandex.com/json/v5")
DIRECT_OAUTH_URL = os.getenv("DIRECT_OAUTH_URL", "https://oauth.yandex.ru")
DIRECT_LOGIN_INFO_URL = os.getenv("DIRECT_LOGIN_INFO_URL", "https://login.yandex.ru/info")
DIRECT_CLIENT_ID = os.getenv("DIRECT_CLIENT_ID", "")
DIRECT_CLIENT_SECRET = os.getenv("DIRECT_CLIENT_SECRET", "")
DIRECT_ATTRIBUTION_MODEL = os.getenv("DIRECT_ATTRIBUTION_MODEL", "AUTO")

# Report polling: attempts per report job and fallback delay when no retryIn hint is sent
REPORT_MAX_ATTEMPTS = int(os.getenv("REPORT_MAX_ATTEMPTS", "30"))
REPORT_BASE_DELAY_SECONDS = float(os.getenv("REPORT_BASE_DELAY_SECONDS", "10"))

# Sync run shape
SYNC_WINDOW_DAYS = int(os.getenv("SYNC_WINDOW_DAYS", "90"))
SYNC_GOAL_CONCURRENCY = int(os.getenv("SYNC_GOAL_CONCURRENCY", "4"))
SYNC_RUN_TIMEOUT_SECONDS = float(os.getenv("SYNC_RUN_TIMEOUT_SECONDS", "3600"))
# Connections are synced one after another unless this is raised above 1
SYNC_MAX_WORKERS = int(os.getenv("SYNC_MAX_WORKERS", "1"))

# Scheduler (server only): timezone and local time (24h)
SYNC_SCHEDULE_TIMEZONE = os.getenv("SYNC_SCHEDULE_TIMEZONE", "Europe/Moscow")
SYNC_SCHEDULE_HOUR = int(os.getenv("SYNC_SCHEDULE_HOUR", "5"))
SYNC_SCHEDULE_MINUTE = int(os.getenv("SYNC_SCHEDULE_MINUTE", "0"))


@dataclass(frozen=True)
class SnowflakeSettings:
    account: str = SNOWFLAKE_ACCOUNT
    user: str = SNOWFLAKE_USER
    password: str = SNOWFLAKE_PASSWORD
    auth_method: str = SNOWFLAKE_AUTH_METHOD
    warehouse: str = SNOWFLAKE_WAREHOUSE
    database: str = SNOWFLAKE_DATABASE
    schema: str = SNOWFLAKE_SCHEMA
    role: str = SNOWFLAKE_ROLE
    private_key: str = SNOWFLAKE_PRIVATE_KEY
    private_key_path: str = SNOWFLAKE_PRIVATE_KEY_PATH
    private_key_passphrase: str = SNOWFLAKE_PRIVATE_KEY_PASSPHRASE


@dataclass(frozen=True)
class RetrySettings:
    """Per report job polling budget: max_attempts submissions, base_delay between them."""

    max_attempts: int = REPORT_MAX_ATTEMPTS
    base_delay_seconds: float = REPORT_BASE_DELAY_SECONDS


@dataclass
class PipelineConfig:
    """Everything one sync run needs, passed explicitly into the orchestrator.

    store: ColumnarStore (storage.SnowflakeStore in production)
    credentials: direct_api.CredentialProvider
    directory: direct_api.CampaignDirectory
    report_client: report_client.ReportJobClient
    """

    store: Any
    credentials: Any
    directory: Any
    report_client: Any
    api_base_url: str = DIRECT_API_URL
    retry: RetrySettings = field(default_factory=RetrySettings)
    goal_concurrency: int = SYNC_GOAL_CONCURRENCY
    window_days: int = SYNC_WINDOW_DAYS
    run_timeout_seconds: Optional[float] = SYNC_RUN_TIMEOUT_SECONDS
    attribution_model: str = DIRECT_ATTRIBUTION_MODEL
    max_workers: int = SYNC_MAX_WORKERS


def parse_goal_ids(raw: Any) -> List[str]:
    """Normalize stored goal ids (JSON list string, comma string or list) to a list of strings."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            raw = json.loads(text)
        else:
            raw = text.split(",")
    return [str(g).strip() for g in raw if str(g).strip()]
