"""Integration tests for the FastAPI app.

Uses TestClient over https so the Secure session cookie round-trips.
"""
from __future__ import annotations

import re
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from apex.config import get_settings

LLM_SECRETS = ("LLM_PROVIDER", "LLM_MODEL", "ANTHROPIC_API_KEY", "OPENAI_API_KEY")

SCORES = {"metrics": "4", "eb": "4", "dc": "4", "dp": "4", "pp": "4", "ip": "4", "ch": "4", "co": "4"}


@pytest.fixture()
def client(tmp_path, monkeypatch):
    """TestClient backed by a throwaway SQLite file, with no LLM keys configured."""
    monkeypatch.setenv("APEX_DB_PATH", str(tmp_path / "apex.db"))
    for name in LLM_SECRETS:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    from apex.app import app

    with TestClient(app, base_url="https://testserver", raise_server_exceptions=True) as c:
        yield c
    get_settings.cache_clear()


def _login(c: TestClient, email: str = "rep@acme.io") -> None:
    resp = c.post("/dev-login", data={"email": email}, follow_redirects=False)
    assert resp.status_code == 302


def _create_deal(c: TestClient, **overrides) -> str:
    form = {"account": "Acme", "title": "Renewal", "value": "25000", "stage": "Discovery", **overrides}
    resp = c.post("/deal", data=form, follow_redirects=False)
    assert resp.status_code == 302
    m = re.fullmatch(r"/deal/([0-9a-f-]+)", resp.headers["location"])
    assert m
    return m.group(1)


class TestPublicEndpoints:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

    def test_login_form(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert 'action="/dev-login"' in resp.text

    def test_unknown_path(self, client):
        resp = client.get("/nowhere")
        assert resp.status_code == 404
        assert resp.text == "Not found"

    @pytest.mark.parametrize("method,path", [
        ("get", "/deals"),
        ("get", "/deal/abc"),
        ("post", "/deal"),
        ("post", "/assess"),
        ("get", "/assessment/abc/1700000000000"),
    ])
    def test_requires_login(self, client, method, path):
        resp = client.request(method.upper(), path, follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"


class TestSession:
    def test_dev_login_sets_cookie(self, client):
        resp = client.post("/dev-login", data={"email": " Rep@Acme.io "}, follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/deals"
        cookie = resp.headers["set-cookie"]
        assert cookie.startswith("apx=")
        assert "HttpOnly" in cookie
        assert "Secure" in cookie
        assert "samesite=lax" in cookie.lower()

    def test_home_redirects_when_signed_in(self, client):
        _login(client)
        resp = client.get("/", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/deals"

    def test_dev_login_requires_email(self, client):
        resp = client.post("/dev-login", data={"email": "  "}, follow_redirects=False)
        assert resp.status_code == 400
        assert resp.text == "Email required"

    def test_logout_ends_session(self, client):
        _login(client)
        resp = client.post("/logout", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        resp = client.get("/deals", follow_redirects=False)
        assert resp.status_code == 302


class TestDealEndpoints:
    def test_create_and_list(self, client):
        _login(client)
        deal_id = _create_deal(client, title="Platform rollout")
        resp = client.get("/deals")
        assert resp.status_code == 200
        assert "Platform rollout" in resp.text
        assert f"/deal/{deal_id}" in resp.text
        assert "$25,000" in resp.text

    def test_deal_page_has_assessment_form(self, client):
        _login(client)
        deal_id = _create_deal(client)
        resp = client.get(f"/deal/{deal_id}")
        assert resp.status_code == 200
        for name in SCORES:
            assert f'name="{name}"' in resp.text
        assert f'value="{deal_id}"' in resp.text

    def test_deal_text_is_escaped(self, client):
        _login(client)
        _create_deal(client, title="<script>alert(1)</script>")
        resp = client.get("/deals")
        assert "<script>alert(1)</script>" not in resp.text
        assert "&lt;script&gt;" in resp.text

    def test_create_requires_title(self, client):
        _login(client)
        resp = client.post("/deal", data={"account": "Acme", "title": ""}, follow_redirects=False)
        assert resp.status_code == 400

    def test_missing_deal(self, client):
        _login(client)
        resp = client.get("/deal/does-not-exist")
        assert resp.status_code == 404
        assert resp.text == "Not found"

    def test_deals_are_private(self, client):
        _login(client, "a@acme.io")
        deal_id = _create_deal(client)
        _login(client, "b@acme.io")
        assert client.get(f"/deal/{deal_id}").status_code == 404
        assert deal_id not in client.get("/deals").text

    def test_colon_in_email_does_not_share_deals(self, client):
        _login(client, "a@acme.io:evil")
        deal_id = _create_deal(client, title="Secret")
        _login(client, "a@acme.io")
        assert "Secret" not in client.get("/deals").text
        assert client.get(f"/deal/evil:{deal_id}").status_code == 404
        resp = client.post("/assess", data={"dealId": f"evil:{deal_id}", **SCORES})
        assert resp.status_code == 404
        assert resp.text == "Deal missing"


class TestAssessEndpoints:
    def test_heuristic_assessment_flow(self, client):
        _login(client)
        deal_id = _create_deal(client)
        resp = client.post("/assess", data={"dealId": deal_id, **SCORES, "notes": "Strong champion"},
                           follow_redirects=False)
        assert resp.status_code == 302
        m = re.fullmatch(rf"/assessment/{deal_id}/(\d+)", resp.headers["location"])
        assert m
        ts = int(m.group(1))

        record = client.get(resp.headers["location"]).json()
        assert record["tier"] == "Strong"
        assert record["go_hold_nogo"] == "Go"
        assert record["total_score"] == 80
        assert record["analysis"] == "Heuristic fallback scoring."
        assert record["source"] == "heuristic"
        assert record["createdAt"] == ts
        assert record["payload"]["scores"]["economic_buyer"] == 4
        assert record["payload"]["notes"] == "Strong champion"
        assert record["payload"]["account"] == "Acme"

        deals_page = client.get("/deals").text
        assert "[Strong 80]" in deals_page
        deal_page = client.get(f"/deal/{deal_id}").text
        assert f"/assessment/{deal_id}/{ts}" in deal_page

    def test_llm_assessment_flow(self, client, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        reply = '```json\n{"tier": "Weak", "go_hold_nogo": "No-go", "total_score": 42, "analysis": "No EB."}\n```'
        _login(client)
        deal_id = _create_deal(client)
        with patch("apex.scorer.AnthropicProvider.complete", new=AsyncMock(return_value=reply)) as complete:
            resp = client.post("/assess", data={"dealId": deal_id, **SCORES})
        complete.assert_awaited_once()
        record = resp.json()
        assert record["tier"] == "Weak"
        assert record["total_score"] == 42
        assert record["source"] == "llm"

    def test_unknown_deal(self, client):
        _login(client)
        resp = client.post("/assess", data={"dealId": "nope", **SCORES})
        assert resp.status_code == 404
        assert resp.text == "Deal missing"

    def test_invalid_score(self, client):
        _login(client)
        deal_id = _create_deal(client)
        resp = client.post("/assess", data={"dealId": deal_id, **SCORES, "ip": "9"})
        assert resp.status_code == 400

    def test_missing_assessment(self, client):
        _login(client)
        deal_id = _create_deal(client)
        resp = client.get(f"/assessment/{deal_id}/1700000000000")
        assert resp.status_code == 404
