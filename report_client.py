"""
Direct Ingest – report job client.

The reports endpoint is offline/batch: a request answers 200 with the TSV body when the
report is ready, 201/202 while it is queued or being built (optional `retryIn` header,
seconds), anything else is an error. The same request is re-sent until it is ready.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from cancellation import CancelToken
from config import DIRECT_API_URL

logger = logging.getLogger(__name__)

REASON_TIMEOUT = "timeout"
REASON_UPSTREAM_ERROR = "upstream_error"

_QUEUED_STATUSES = (201, 202)


class ReportJobFailure(Exception):
    """A report job that will not produce rows. reason is 'timeout' or 'upstream_error'."""

    def __init__(self, reason: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.status_code = status_code


@dataclass(frozen=True)
class ReportSpec:
    date_from: str
    date_to: str
    campaign_ids: Sequence[str]
    field_names: Sequence[str]
    report_type: str = "CUSTOM_REPORT"
    goal_id: Optional[str] = None
    attribution_model: Optional[str] = None
    label: str = ""

    def report_name(self) -> str:
        """Stable per request content: the server keys queued jobs by name."""
        digest = hashlib.md5(json.dumps(self._identity(), sort_keys=True).encode("utf-8")).hexdigest()[:16]
        prefix = self.label or self.report_type
        return f"{prefix} {digest}"

    def _identity(self) -> Dict[str, Any]:
        return {
            "from": self.date_from,
            "to": self.date_to,
            "campaigns": sorted(str(c) for c in self.campaign_ids),
            "fields": list(self.field_names),
            "type": self.report_type,
            "goal": self.goal_id,
            "model": self.attribution_model,
        }

    def to_payload(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "SelectionCriteria": {
                "DateFrom": self.date_from,
                "DateTo": self.date_to,
                "Filter": [
                    {"Field": "CampaignId", "Operator": "IN", "Values": [str(c) for c in self.campaign_ids]},
                ],
            },
            "FieldNames": list(self.field_names),
            "ReportName": self.report_name(),
            "ReportType": self.report_type,
            "DateRangeType": "CUSTOM_DATE",
            "Format": "TSV",
            "IncludeVAT": "YES",
            "IncludeDiscount": "NO",
        }
        if self.goal_id:
            params["Goals"] = [str(self.goal_id)]
            params["AttributionModels"] = [self.attribution_model or "AUTO"]
        return {"params": params}


def _retry_in(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("retryIn")
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if value >= 0 else None


def parse_tsv(text: str, expected_fields: Sequence[str]) -> List[Dict[str, Optional[str]]]:
    """Parse a TSV report body into dicts keyed by header.

    Raises ValueError when the header does not carry the requested fields. Goal-scoped
    reports rename Conversions/Revenue to Conversions_<goal>_<model>, so a prefix match counts.
    """
    lines = [line for line in text.split("\n") if line.strip()]
    if not lines:
        return []
    headers = [h.strip() for h in lines[0].rstrip("\r").split("\t")]
    for name in expected_fields:
        if name not in headers and not any(h.startswith(name + "_") for h in headers):
            raise ValueError(f"report header missing field {name!r}: {headers[:12]}")
    rows: List[Dict[str, Optional[str]]] = []
    for line in lines[1:]:
        values = line.rstrip("\r").split("\t")
        if values[0] == headers[0]:
            continue
        row: Dict[str, Optional[str]] = {}
        for index, header in enumerate(headers):
            value = values[index] if index < len(values) else None
            row[header] = None if value in (None, "", "--") else value
        rows.append(row)
    return rows


class ReportJobClient:
    """Submits report specs and polls until ready. Holds no state between calls."""

    def __init__(self, http_client: Optional[httpx.Client] = None, base_url: str = DIRECT_API_URL):
        self._client = http_client or httpx.Client(timeout=httpx.Timeout(60.0, read=300.0))
        self._url = base_url.rstrip("/") + "/reports"

    def _headers(self, access_token: str, login: str) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept-Language": "ru",
            "processingMode": "auto",
            "returnMoneyInMicros": "false",
            "skipReportHeader": "true",
            "skipReportSummary": "true",
        }
        if login:
            headers["Client-Login"] = login
        return headers

    def submit_and_await(
        self,
        spec: ReportSpec,
        access_token: str,
        login: str,
        max_attempts: int,
        base_delay: float,
        token: Optional[CancelToken] = None,
    ) -> List[Dict[str, Optional[str]]]:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        token = token or CancelToken()
        payload = spec.to_payload()
        headers = self._headers(access_token, login)
        name = payload["params"]["ReportName"]

        for attempt in range(1, max_attempts + 1):
            token.check()
            try:
                response = self._client.post(self._url, json=payload, headers=headers)
            except httpx.HTTPError as e:
                raise ReportJobFailure(REASON_UPSTREAM_ERROR, f"report {name}: transport error: {e}") from e

            if response.status_code == 200:
                try:
                    rows = parse_tsv(response.text, spec.field_names)
                except ValueError as e:
                    raise ReportJobFailure(REASON_UPSTREAM_ERROR, f"report {name}: malformed body: {e}", 200) from e
                logger.info("report %s ready after %s attempt(s): %s rows", name, attempt, len(rows))
                return rows

            if response.status_code in _QUEUED_STATUSES:
                if attempt == max_attempts:
                    break
                hint = _retry_in(response)
                delay = hint if hint is not None else base_delay
                logger.debug("report %s queued (status=%s), attempt %s/%s, retry in %ss", name, response.status_code, attempt, max_attempts, delay)
                token.sleep(delay)
                continue

            raise ReportJobFailure(
                REASON_UPSTREAM_ERROR,
                f"report {name} returned {response.status_code}: {response.text[:300]}",
                response.status_code,
            )

        raise ReportJobFailure(REASON_TIMEOUT, f"report {name} still queued after {max_attempts} attempts")
