from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
from fastapi.testclient import TestClient

from app.core.config import settings
from app.main import create_app
from app.services import ml_api_client


class ApiMLIntegrationTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self._old = {
            "sqlite_path": settings.sqlite_path,
            "ml_client_id": settings.ml_client_id,
            "ml_client_secret": settings.ml_client_secret,
            "ml_redirect_uri": settings.ml_redirect_uri,
            "ml_integration_url": settings.ml_integration_url,
        }
        settings.sqlite_path = str(Path(self._tmp.name) / "ml_integration.db")
        settings.ml_client_id = "1234567890"
        settings.ml_client_secret = "client-secret-value"
        settings.ml_redirect_uri = "https://seller.example.com/ml-callback"
        settings.ml_integration_url = "https://seller.example.com/integracao"

        self.exchange = AsyncMock(return_value={"access_token": "APP_USR-token", "user_id": "987"})
        self.fetch_user = AsyncMock(return_value={"id": 987, "nickname": "LOJA_TESTE"})
        self._patches = [
            patch.object(ml_api_client, "exchange_authorization_code", new=self.exchange),
            patch.object(ml_api_client, "fetch_user", new=self.fetch_user),
        ]
        for p in self._patches:
            p.start()

        self.client = TestClient(create_app())
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        for p in self._patches:
            p.stop()
        for key, value in self._old.items():
            setattr(settings, key, value)
        self._tmp.cleanup()

    def _register(self, email: str = "seller@example.com") -> dict:
        response = self.client.post("/api/auth/register", json={"email": email, "password": "secret123"})
        self.assertEqual(response.status_code, 200, msg=response.text)
        return {"Authorization": f"Bearer {response.json()['token']}"}

    def _connect(self, headers: dict) -> str:
        response = self.client.post("/api/ml/connect", headers=headers)
        self.assertEqual(response.status_code, 200, msg=response.text)
        url = response.json()["authorization_url"]
        return parse_qs(urlparse(url).query)["state"][0]

    def test_connect_callback_status_and_disconnect(self) -> None:
        headers = self._register()

        status_before = self.client.get("/api/ml/status", headers=headers)
        self.assertEqual(status_before.json(), {"connected": False, "ml_user_id": None, "ml_nickname": None})

        state = self._connect(headers)
        callback = self.client.post("/api/ml/callback", headers=headers, json={"code": "TG-1", "state": state})
        self.assertEqual(callback.status_code, 200, msg=callback.text)
        self.assertEqual(callback.json(), {"success": True, "nickname": "LOJA_TESTE", "user_id": "987"})

        status_after = self.client.get("/api/ml/status", headers=headers)
        self.assertEqual(
            status_after.json(),
            {"connected": True, "ml_user_id": "987", "ml_nickname": "LOJA_TESTE"},
        )
        self.assertNotIn("APP_USR-token", status_after.text)

        disconnect = self.client.delete("/api/ml/connection", headers=headers)
        self.assertEqual(disconnect.status_code, 200, msg=disconnect.text)
        self.assertFalse(self.client.get("/api/ml/status", headers=headers).json()["connected"])

    def test_connect_requires_session(self) -> None:
        response = self.client.post("/api/ml/connect")
        self.assertEqual(response.status_code, 401, msg=response.text)

    def test_connect_reports_missing_configuration(self) -> None:
        headers = self._register()
        settings.ml_client_id = ""

        response = self.client.post("/api/ml/connect", headers=headers)

        self.assertEqual(response.status_code, 500, msg=response.text)
        self.assertEqual(response.json()["detail"]["code"], "ml_not_configured")

    def test_callback_state_mismatch_is_rejected(self) -> None:
        headers = self._register()
        self._connect(headers)

        response = self.client.post("/api/ml/callback", headers=headers, json={"code": "TG-1", "state": "forged"})

        self.assertEqual(response.status_code, 400, msg=response.text)
        self.assertEqual(response.json()["detail"]["code"], "state_mismatch")
        self.exchange.assert_not_awaited()

    def test_callback_provider_error_is_reported(self) -> None:
        headers = self._register()
        state = self._connect(headers)

        response = self.client.post(
            "/api/ml/callback",
            headers=headers,
            json={"error": "access_denied", "state": state},
        )

        self.assertEqual(response.status_code, 400, msg=response.text)
        self.assertEqual(response.json()["detail"]["code"], "provider_denied")

    def test_callback_replay_is_rejected_without_second_exchange(self) -> None:
        headers = self._register()
        state = self._connect(headers)
        first = self.client.post("/api/ml/callback", headers=headers, json={"code": "TG-1", "state": state})
        self.assertEqual(first.status_code, 200, msg=first.text)

        replay = self.client.post("/api/ml/callback", headers=headers, json={"code": "TG-1", "state": state})

        self.assertEqual(replay.status_code, 409, msg=replay.text)
        self.assertEqual(replay.json()["detail"]["code"], "state_not_found")
        self.assertEqual(self.exchange.await_count, 1)

    def test_callback_without_session_is_unauthenticated(self) -> None:
        response = self.client.post("/api/ml/callback", json={"code": "TG-1"})

        self.assertEqual(response.status_code, 401, msg=response.text)
        self.assertEqual(response.json()["detail"]["code"], "unauthenticated")

    def test_provider_redirect_forwards_code_to_integration_screen(self) -> None:
        response = self.client.get(
            "/api/ml/callback",
            params={"code": "TG-1", "state": "abc"},
            follow_redirects=False,
        )

        self.assertEqual(response.status_code, 302, msg=response.text)
        location = urlparse(response.headers["location"])
        self.assertEqual(location.path, "/integracao")
        self.assertEqual(parse_qs(location.query), {"code": ["TG-1"], "state": ["abc"]})
        self.exchange.assert_not_awaited()

    def test_provider_redirect_forwards_errors(self) -> None:
        denied = self.client.get("/api/ml/callback", params={"error": "access_denied"}, follow_redirects=False)
        self.assertEqual(
            parse_qs(urlparse(denied.headers["location"]).query),
            {"error": ["provider_denied"], "provider_error": ["access_denied"]},
        )

        missing = self.client.get("/api/ml/callback", follow_redirects=False)
        self.assertEqual(parse_qs(urlparse(missing.headers["location"]).query), {"error": ["missing_code"]})

    def test_provider_redirect_keeps_existing_integration_query(self) -> None:
        settings.ml_integration_url = "https://seller.example.com/integracao?tab=marketplaces"

        response = self.client.get(
            "/api/ml/callback",
            params={"code": "TG-1", "state": "abc"},
            follow_redirects=False,
        )

        location = response.headers["location"]
        self.assertEqual(location.count("?"), 1, location)
        self.assertEqual(
            parse_qs(urlparse(location).query),
            {"tab": ["marketplaces"], "code": ["TG-1"], "state": ["abc"]},
        )

    def test_credentials_check_route(self) -> None:
        headers = self._register()
        ml_api_client._transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"id": "MLB"}))
        try:
            response = self.client.get("/api/ml/credentials-check", headers=headers)
        finally:
            ml_api_client._transport = None

        self.assertEqual(response.status_code, 200, msg=response.text)
        body = response.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["credentials"]["client_id"], "1234...7890")
        self.assertEqual(body["connectivity"]["site_id"], "MLB")
        self.assertNotIn("client-secret-value", response.text)

        anonymous = self.client.get("/api/ml/credentials-check")
        self.assertEqual(anonymous.status_code, 401, msg=anonymous.text)

    def test_public_config_exposes_client_id_but_not_secret(self) -> None:
        response = self.client.get("/api/ml/config")

        self.assertEqual(response.status_code, 200, msg=response.text)
        self.assertEqual(
            response.json(),
            {"client_id": "1234567890", "redirect_uri": "https://seller.example.com/ml-callback"},
        )
        self.assertNotIn("client-secret-value", response.text)


if __name__ == "__main__":
    unittest.main()
