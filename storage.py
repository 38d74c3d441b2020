"""
Direct Ingest – Storage (Snowflake).
Every statement is parameterized. Table names come from a fixed allow-list and are bound
through IDENTIFIER(%(table)s); multi-row statements use per-row prefixed params.
A connection can be passed in and reused for a whole run to avoid repeated slow connects.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from config import SnowflakeSettings, parse_goal_ids
from models import AdContent, CampaignInfo, Connection, ConnectionStatus, Level, MergedRecord
from snowflake_connection import execute, execute_query, get_connection
from writer import CONVERSION_COLUMNS, CONVERSION_TABLES, PERFORMANCE_COLUMNS, PERFORMANCE_TABLES

logger = logging.getLogger(__name__)

TABLE_COLUMNS: Dict[str, List[str]] = {}
for _level in Level:
    TABLE_COLUMNS[PERFORMANCE_TABLES[_level]] = PERFORMANCE_COLUMNS
    TABLE_COLUMNS[CONVERSION_TABLES[_level]] = CONVERSION_COLUMNS

CONNECTIONS_TABLE = "direct_connections"
CAMPAIGNS_TABLE = "campaigns"
AD_GROUPS_TABLE = "ad_groups"
ADS_TABLE = "ads"
# Ad texts survive a sync where ads.get failed
AD_CONTENT_COLUMNS = ("title", "title2", "text", "href")

_ALLOWED_TABLES = frozenset(TABLE_COLUMNS) | {CONNECTIONS_TABLE, CAMPAIGNS_TABLE, AD_GROUPS_TABLE, ADS_TABLE}


def _safe_str(v: Any, max_len: int = 65535) -> Optional[str]:
    if v is None:
        return None
    s = str(v)
    return s[:max_len] if len(s) > max_len else s


def _values_clause(rows: Sequence[Dict[str, Any]], columns: Sequence[str], params: Dict[str, Any]) -> str:
    """Fill params with r{i}_{col} entries and return '(%(r0_a)s, ...), (...)'."""
    parts = []
    for i, r in enumerate(rows):
        placeholders = []
        for col in columns:
            params[f"r{i}_{col}"] = r.get(col)
            placeholders.append(f"%(r{i}_{col})s")
        parts.append("(" + ", ".join(placeholders) + ")")
    return ",\n                ".join(parts)


def _goal_filter(goal_ids: Optional[Sequence[str]], params: Dict[str, Any]) -> str:
    if not goal_ids:
        return ""
    names = []
    for i, goal_id in enumerate(goal_ids):
        params[f"g{i}"] = str(goal_id)
        names.append(f"%(g{i})s")
    return f" AND goal_id IN ({', '.join(names)})"


class SnowflakeStore:
    """ColumnarStore over Snowflake, plus the connection and dimension tables the sync touches."""

    def __init__(self, settings: Optional[SnowflakeSettings] = None, conn: Optional[Any] = None):
        self._settings = settings or SnowflakeSettings()
        self._conn = conn

    def table(self, name: str) -> str:
        """Fully qualified name for an allow-listed table (database.schema.table)."""
        if name not in _ALLOWED_TABLES:
            raise ValueError(f"unknown table: {name}")
        if self._settings.database and self._settings.schema:
            return f"{self._settings.database}.{self._settings.schema}.{name}"
        return name

    def _run(self, use_connection: Callable[[Any], Any]) -> Any:
        """Run use_connection on the shared connection, or open one just for this call."""
        if self._conn is not None:
            return use_connection(self._conn)
        with get_connection(self._settings) as c:
            return use_connection(c)

    # -- ColumnarStore ---------------------------------------------------------------

    def insert(self, table: str, rows: Sequence[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        columns = TABLE_COLUMNS.get(table)
        if columns is None:
            raise ValueError(f"table {table} is not an insert target")
        params: Dict[str, Any] = {"table": self.table(table)}
        values_sql = _values_clause(rows, columns, params)
        sql = f"""
            INSERT INTO IDENTIFIER(%(table)s) ({", ".join(columns)})
            VALUES
                {values_sql}
            """

        def do(conn):
            execute(conn, sql, params)
            conn.commit()

        self._run(do)
        logger.debug("inserted %s rows into %s", len(rows), table)
        return len(rows)

    def delete_where(self, table: str, connection_id: str, date_from: date, date_to: date) -> int:
        sql = (
            "DELETE FROM IDENTIFIER(%(table)s) WHERE connection_id = %(connection_id)s "
            "AND stat_date >= %(date_from)s::DATE AND stat_date <= %(date_to)s::DATE"
        )
        params = {
            "table": self.table(table),
            "connection_id": connection_id,
            "date_from": date_from.isoformat(),
            "date_to": date_to.isoformat(),
        }

        def do(conn):
            deleted = execute(conn, sql, params)
            conn.commit()
            return deleted

        deleted = self._run(do)
        logger.info("deleted %s rows from %s for connection=%s %s..%s", deleted, table, connection_id, date_from, date_to)
        return deleted

    # -- reads -------------------------------------------------------------------------

    def select_rows(
        self,
        table: str,
        connection_id: str,
        date_from: date,
        date_to: date,
        goal_ids: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        columns = TABLE_COLUMNS.get(table)
        if columns is None:
            raise ValueError(f"table {table} is not a stats table")
        params: Dict[str, Any] = {
            "table": self.table(table),
            "connection_id": connection_id,
            "date_from": date_from.isoformat(),
            "date_to": date_to.isoformat(),
        }
        goal_sql = _goal_filter(goal_ids, params) if "goal_id" in columns else ""
        sql = (
            f"SELECT {', '.join(columns)} FROM IDENTIFIER(%(table)s) "
            "WHERE connection_id = %(connection_id)s AND stat_date >= %(date_from)s::DATE AND stat_date <= %(date_to)s::DATE"
            f"{goal_sql}"
        )
        df = self._run(lambda conn: execute_query(conn, sql, params))
        if df.empty:
            return pd.DataFrame(columns=columns)
        return df

    def load_performance(self, level: Level, connection_id: str, date_from: date, date_to: date) -> pd.DataFrame:
        return self.select_rows(PERFORMANCE_TABLES[level], connection_id, date_from, date_to)

    def load_conversions(
        self, level: Level, connection_id: str, date_from: date, date_to: date, goal_ids: Optional[Sequence[str]] = None
    ) -> pd.DataFrame:
        return self.select_rows(CONVERSION_TABLES[level], connection_id, date_from, date_to, goal_ids)

    # -- connections -------------------------------------------------------------------

    def _connection_from_row(self, row: Dict[str, Any]) -> Connection:
        status = row.get("status") or ConnectionStatus.ACTIVE.value
        return Connection(
            id=str(row["id"]),
            login=row.get("login") or "",
            access_token=row.get("access_token") or "",
            refresh_token=row.get("refresh_token") or "",
            goal_ids=parse_goal_ids(row.get("conversion_goals")),
            status=ConnectionStatus(status),
            last_sync_at=None if pd.isna(row.get("last_sync_at")) else row.get("last_sync_at"),
        )

    def get_connection_record(self, connection_id: str) -> Optional[Connection]:
        sql = (
            "SELECT id, login, access_token, refresh_token, conversion_goals, status, last_sync_at "
            "FROM IDENTIFIER(%(table)s) WHERE id = %(id)s"
        )
        params = {"table": self.table(CONNECTIONS_TABLE), "id": connection_id}
        df = self._run(lambda conn: execute_query(conn, sql, params))
        if df.empty:
            return None
        return self._connection_from_row(df.to_dict("records")[0])

    def list_active_connections(self) -> List[Connection]:
        sql = (
            "SELECT id, login, access_token, refresh_token, conversion_goals, status, last_sync_at "
            "FROM IDENTIFIER(%(table)s) WHERE status = %(status)s ORDER BY id"
        )
        params = {"table": self.table(CONNECTIONS_TABLE), "status": ConnectionStatus.ACTIVE.value}
        df = self._run(lambda conn: execute_query(conn, sql, params))
        if df.empty:
            return []
        return [self._connection_from_row(r) for r in df.to_dict("records")]

    def update_connection_status(self, connection_id: str, status: ConnectionStatus, last_sync_at: Optional[datetime] = None) -> None:
        params: Dict[str, Any] = {"table": self.table(CONNECTIONS_TABLE), "id": connection_id, "status": status.value}
        if last_sync_at is not None:
            params["last_sync_at"] = last_sync_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
            sql = "UPDATE IDENTIFIER(%(table)s) SET status = %(status)s, last_sync_at = %(last_sync_at)s::TIMESTAMP_NTZ WHERE id = %(id)s"
        else:
            sql = "UPDATE IDENTIFIER(%(table)s) SET status = %(status)s WHERE id = %(id)s"

        def do(conn):
            execute(conn, sql, params)
            conn.commit()

        self._run(do)
        logger.info("connection=%s status=%s%s", connection_id, status.value, f" last_sync_at={params['last_sync_at']}" if last_sync_at else "")

    def update_connection_tokens(self, connection_id: str, access_token: str, refresh_token: str) -> None:
        sql = "UPDATE IDENTIFIER(%(table)s) SET access_token = %(access_token)s, refresh_token = %(refresh_token)s WHERE id = %(id)s"
        params = {
            "table": self.table(CONNECTIONS_TABLE),
            "id": connection_id,
            "access_token": access_token,
            "refresh_token": refresh_token,
        }

        def do(conn):
            execute(conn, sql, params)
            conn.commit()

        self._run(do)
        logger.info("connection=%s tokens updated", connection_id)

    # -- dimensions (natural-key upserts, no history) ----------------------------------

    def _merge_dims(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        key_columns: Sequence[str],
        value_columns: Sequence[str],
        keep_existing: Sequence[str] = (),
    ) -> int:
        """MERGE by natural key; columns in keep_existing are not overwritten with NULL."""
        if not rows:
            return 0
        columns = list(key_columns) + list(value_columns)
        params: Dict[str, Any] = {"table": self.table(table)}
        values_sql = _values_clause(rows, columns, params)
        on_sql = " AND ".join(f"target.{c} = source.{c}" for c in key_columns)
        set_sql = ", ".join(
            f"{c} = COALESCE(source.{c}, target.{c})" if c in keep_existing else f"{c} = source.{c}" for c in value_columns
        )
        merge_sql = f"""
            MERGE INTO IDENTIFIER(%(table)s) AS target
            USING (SELECT * FROM (VALUES
                {values_sql}
                ) AS v({", ".join(columns)})
            ) AS source
            ON {on_sql}
            WHEN MATCHED THEN UPDATE SET {set_sql}, updated_at = CURRENT_TIMESTAMP()
            WHEN NOT MATCHED THEN INSERT ({", ".join(columns)}, updated_at)
            VALUES ({", ".join("source." + c for c in columns)}, CURRENT_TIMESTAMP())
            """

        def do(conn):
            execute(conn, merge_sql, params)
            conn.commit()

        self._run(do)
        logger.info("upserted %s rows into %s", len(rows), table)
        return len(rows)

    def upsert_campaigns(self, connection_id: str, campaigns: Sequence[CampaignInfo]) -> int:
        rows = [
            {
                "connection_id": connection_id,
                "external_id": c.id,
                "name": _safe_str(c.name, 512),
                "state": _safe_str(c.state, 32),
                "type": _safe_str(c.type, 64),
                "daily_budget": c.daily_budget,
            }
            for c in campaigns
        ]
        return self._merge_dims(CAMPAIGNS_TABLE, rows, ["connection_id", "external_id"], ["name", "state", "type", "daily_budget"])

    def upsert_ad_groups(self, connection_id: str, records: Sequence[MergedRecord]) -> int:
        seen: Dict[str, Dict[str, Any]] = {}
        for r in records:
            if r.key.ad_group_id and r.key.ad_group_id not in seen:
                seen[r.key.ad_group_id] = {
                    "connection_id": connection_id,
                    "external_id": r.key.ad_group_id,
                    "campaign_id": r.key.campaign_id,
                    "name": _safe_str(r.ad_group_name, 512),
                }
        return self._merge_dims(AD_GROUPS_TABLE, list(seen.values()), ["connection_id", "external_id"], ["campaign_id", "name"])

    def upsert_ads(self, connection_id: str, records: Sequence[MergedRecord], contents: Optional[Mapping[str, AdContent]] = None) -> int:
        contents = contents or {}
        seen: Dict[str, Dict[str, Any]] = {}
        for r in records:
            if r.key.ad_id and r.key.ad_id not in seen:
                content = contents.get(r.key.ad_id)
                seen[r.key.ad_id] = {
                    "connection_id": connection_id,
                    "external_id": r.key.ad_id,
                    "campaign_id": r.key.campaign_id,
                    "ad_group_id": r.key.ad_group_id,
                    "title": _safe_str(content.title, 512) if content else None,
                    "title2": _safe_str(content.title2, 512) if content else None,
                    "text": _safe_str(content.text, 2048) if content else None,
                    "href": _safe_str(content.href, 2048) if content else None,
                }
        return self._merge_dims(
            ADS_TABLE,
            list(seen.values()),
            ["connection_id", "external_id"],
            ["campaign_id", "ad_group_id"] + list(AD_CONTENT_COLUMNS),
            keep_existing=AD_CONTENT_COLUMNS,
        )
