import json

import httpx
import pytest

from direct_api import AuthExpired, CampaignDirectory, CredentialProvider, DirectApiError
from fakes import make_connection


def _http(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_list_campaigns_skips_archived_and_reads_budget():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.read())
        seen["headers"] = request.headers
        return httpx.Response(200, json={"result": {"Campaigns": [
            {"Id": 11, "Name": "Brand", "State": "ON", "Type": "TEXT_CAMPAIGN", "DailyBudget": {"Amount": 1500}},
            {"Id": 12, "Name": "Old", "State": "ARCHIVED", "Type": "TEXT_CAMPAIGN"},
            {"Id": 13, "Name": "Paused", "State": "SUSPENDED", "Type": "UNIFIED_CAMPAIGN"},
        ]}})

    directory = CampaignDirectory(http_client=_http(handler), base_url="https://api.test/json/v5")
    campaigns = directory.list_campaigns(make_connection(), "tok")

    assert [(c.id, c.state) for c in campaigns] == [("11", "ON"), ("13", "SUSPENDED")]
    assert campaigns[0].daily_budget == 1500.0
    assert seen["body"]["method"] == "get"
    assert seen["headers"]["Client-Login"] == "brand-login"


def test_list_ad_contents_reads_text_ad_fields():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.read())
        return httpx.Response(200, json={"result": {"Ads": [
            {"Id": 101, "TextAd": {"Title": "Brand shoes", "Title2": "Official", "Text": "Free delivery", "Href": "https://shop.test"}},
            {"Id": 102},
        ]}})

    directory = CampaignDirectory(http_client=_http(handler), base_url="https://api.test/json/v5")
    contents = directory.list_ad_contents(make_connection(), "tok", ["101", "102", "101"])

    assert seen["path"] == "/json/v5/ads"
    assert seen["body"]["params"]["SelectionCriteria"] == {"Ids": [101, 102]}
    assert contents["101"].title == "Brand shoes"
    assert contents["101"].href == "https://shop.test"
    assert contents["102"].title == ""


def test_api_error_object_raises():
    def handler(request):
        return httpx.Response(200, json={"error": {"error_code": 53, "error_string": "Authorization error", "error_detail": "Invalid OAuth token"}})

    directory = CampaignDirectory(http_client=_http(handler))
    with pytest.raises(DirectApiError) as exc:
        directory.list_campaigns(make_connection(), "tok")
    assert exc.value.code == 53


def test_refresh_keeps_old_refresh_token_when_none_returned():
    def handler(request):
        form = dict(pair.split("=") for pair in request.read().decode().split("&"))
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "r-1"
        return httpx.Response(200, json={"access_token": "a-2"})

    provider = CredentialProvider(http_client=_http(handler), client_id="id", client_secret="secret", oauth_url="https://oauth.test")
    pair = provider.refresh("r-1")

    assert (pair.access_token, pair.refresh_token) == ("a-2", "r-1")


def test_refresh_without_client_credentials_is_auth_expired():
    provider = CredentialProvider(http_client=_http(lambda r: httpx.Response(200)), client_id="", client_secret="")
    assert not provider.can_refresh(make_connection())
    with pytest.raises(AuthExpired):
        provider.refresh("r-1")


def test_rejected_refresh_is_auth_expired():
    provider = CredentialProvider(http_client=_http(lambda r: httpx.Response(400, json={"error": "invalid_grant"})), client_id="id", client_secret="s")
    with pytest.raises(AuthExpired):
        provider.refresh("r-1")


def test_verify_rejects_on_401():
    def handler(request):
        assert request.headers["Authorization"] == "OAuth stale"
        return httpx.Response(401)

    provider = CredentialProvider(http_client=_http(handler), login_info_url="https://login.test/info")
    assert provider.verify("stale") is False


def test_valid_token_is_accepted():
    provider = CredentialProvider(http_client=_http(lambda r: httpx.Response(200, json={"login": "x"})), login_info_url="https://login.test/info")
    assert provider.verify("tok")


def test_network_failure_during_token_check_propagates():
    def handler(request):
        raise httpx.ConnectError("dns down", request=request)

    provider = CredentialProvider(http_client=_http(handler), login_info_url="https://login.test/info")
    with pytest.raises(httpx.ConnectError):
        provider.verify("valid-token")


def test_get_valid_token_refreshes_rejected_token():
    def handler(request):
        if request.url.path.endswith("/info"):
            return httpx.Response(401)
        return httpx.Response(200, json={"access_token": "a-2", "refresh_token": "r-2"})

    provider = CredentialProvider(
        http_client=_http(handler),
        client_id="id",
        client_secret="s",
        oauth_url="https://oauth.test",
        login_info_url="https://login.test/info",
    )
    connection = make_connection()
    refreshing = []

    assert provider.get_valid_token(connection, on_refresh=lambda: refreshing.append(True)) == "a-2"
    assert (connection.access_token, connection.refresh_token) == ("a-2", "r-2")
    assert refreshing == [True]


def test_get_valid_token_returns_accepted_token_as_is():
    provider = CredentialProvider(http_client=_http(lambda r: httpx.Response(200, json={"login": "x"})), login_info_url="https://login.test/info")
    assert provider.get_valid_token(make_connection(access_token="tok")) == "tok"


def test_get_valid_token_without_refresh_path_is_auth_expired():
    provider = CredentialProvider(http_client=_http(lambda r: httpx.Response(401)), client_id="", client_secret="", login_info_url="https://login.test/info")
    with pytest.raises(AuthExpired):
        provider.get_valid_token(make_connection())
