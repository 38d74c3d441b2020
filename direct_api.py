"""
Direct Ingest – campaigns directory and OAuth credentials (JSON API, not reports).
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from config import DIRECT_API_URL, DIRECT_CLIENT_ID, DIRECT_CLIENT_SECRET, DIRECT_LOGIN_INFO_URL, DIRECT_OAUTH_URL
from models import AdContent, CampaignInfo, Connection, TokenPair

logger = logging.getLogger(__name__)

# "Active" here means not archived: these states still accrue stats worth syncing
ACTIVE_CAMPAIGN_STATES = frozenset({"ON", "OFF", "SUSPENDED", "ENDED"})

# ads.get accepts at most this many ids per call
ADS_GET_MAX_IDS = 10000


class DirectApiError(Exception):
    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class AuthExpired(Exception):
    """The access token is rejected and there is no way to refresh it; the user must reconnect."""


def _default_client() -> httpx.Client:
    return httpx.Client(timeout=httpx.Timeout(30.0, read=60.0))


class CampaignDirectory:
    """Campaign list and ad texts over the JSON API (campaigns.get, ads.get)."""

    def __init__(self, http_client: Optional[httpx.Client] = None, base_url: str = DIRECT_API_URL):
        self._client = http_client or _default_client()
        self._base_url = base_url.rstrip("/")

    def _call(self, service: str, params: Dict[str, Any], connection: Connection, access_token: str) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}", "Accept-Language": "ru"}
        if connection.login:
            headers["Client-Login"] = connection.login
        response = self._client.post(f"{self._base_url}/{service}", json={"method": "get", "params": params}, headers=headers)
        if response.status_code != 200:
            raise DirectApiError(f"{service}.get returned {response.status_code}: {response.text[:200]}", response.status_code)
        data = response.json()
        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            raise DirectApiError(f"{service}.get error: {err.get('error_string')} {err.get('error_detail', '')}".strip(), err.get("error_code"))
        return data.get("result") or {}

    def list_campaigns(self, connection: Connection, access_token: str, include_archived: bool = False) -> List[CampaignInfo]:
        params = {
            "SelectionCriteria": {},
            "FieldNames": ["Id", "Name", "Status", "State", "Type", "DailyBudget"],
        }
        result = self._call("campaigns", params, connection, access_token)

        out: List[CampaignInfo] = []
        for c in result.get("Campaigns") or []:
            state = str(c.get("State") or "")
            if not include_archived and state and state not in ACTIVE_CAMPAIGN_STATES:
                continue
            budget = c.get("DailyBudget") or {}
            out.append(CampaignInfo(
                id=str(c.get("Id")),
                name=c.get("Name") or "",
                state=state,
                type=c.get("Type") or "",
                daily_budget=float(budget.get("Amount") or 0),
            ))
        logger.info("campaigns.get: %s campaigns for login=%s", len(out), connection.login)
        return out

    def list_ad_contents(self, connection: Connection, access_token: str, ad_ids: Sequence[str]) -> Dict[str, AdContent]:
        """Title, second title, text and link of the given ads, keyed by ad id."""
        ids = list(dict.fromkeys(str(a) for a in ad_ids if a))
        out: Dict[str, AdContent] = {}
        for i in range(0, len(ids), ADS_GET_MAX_IDS):
            params = {
                "SelectionCriteria": {"Ids": [int(a) if a.isdigit() else a for a in ids[i : i + ADS_GET_MAX_IDS]]},
                "FieldNames": ["Id"],
                "TextAdFieldNames": ["Title", "Title2", "Text", "Href"],
            }
            result = self._call("ads", params, connection, access_token)
            for ad in result.get("Ads") or []:
                text_ad = ad.get("TextAd") or {}
                ad_id = str(ad.get("Id"))
                out[ad_id] = AdContent(
                    ad_id=ad_id,
                    title=text_ad.get("Title") or "",
                    title2=text_ad.get("Title2") or "",
                    text=text_ad.get("Text") or "",
                    href=text_ad.get("Href") or "",
                )
        logger.info("ads.get: %s of %s ads with content for login=%s", len(out), len(ids), connection.login)
        return out


class CredentialProvider:
    """Verifies access tokens and refreshes them through the OAuth token endpoint."""

    def __init__(
        self,
        http_client: Optional[httpx.Client] = None,
        client_id: str = DIRECT_CLIENT_ID,
        client_secret: str = DIRECT_CLIENT_SECRET,
        oauth_url: str = DIRECT_OAUTH_URL,
        login_info_url: str = DIRECT_LOGIN_INFO_URL,
    ):
        self._client = http_client or _default_client()
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = oauth_url.rstrip("/") + "/token"
        self._login_info_url = login_info_url

    def can_refresh(self, connection: Connection) -> bool:
        return bool(connection.refresh_token and self._client_id and self._client_secret)

    def verify(self, access_token: str) -> bool:
        """Lightweight check: True when the token is accepted.

        Transport errors propagate; only an answer from the server counts as a rejection.
        """
        response = self._client.get(self._login_info_url, headers={"Authorization": f"OAuth {access_token}"})
        if response.status_code != 200:
            logger.warning("access token rejected (%s)", response.status_code)
        return response.status_code == 200

    def refresh(self, refresh_token: str) -> TokenPair:
        if not refresh_token or not (self._client_id and self._client_secret):
            raise AuthExpired("no refresh path: refresh token or OAuth client credentials missing")
        form: Dict[str, Any] = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        response = self._client.post(self._token_url, data=form)
        if response.status_code != 200:
            raise AuthExpired(f"token refresh rejected ({response.status_code}): {response.text[:200]}")
        payload = response.json()
        access = payload.get("access_token")
        if not access:
            raise AuthExpired("token refresh returned no access_token")
        # Some OAuth servers only rotate the access token
        return TokenPair(access_token=access, refresh_token=payload.get("refresh_token") or refresh_token)

    def get_valid_token(self, connection: Connection, on_refresh: Optional[Callable[[], None]] = None) -> str:
        """Access token that passed verify(), refreshing it when rejected.

        A refresh rotates the pair on `connection` in place; on_refresh runs just before it.
        """
        if self.verify(connection.access_token):
            return connection.access_token
        if not self.can_refresh(connection):
            raise AuthExpired("access token rejected and cannot be refreshed; reconnect the account")
        if on_refresh is not None:
            on_refresh()
        pair = self.refresh(connection.refresh_token)
        connection.access_token = pair.access_token
        connection.refresh_token = pair.refresh_token
        return pair.access_token
