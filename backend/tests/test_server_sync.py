"""Tests for the /api/sync routes."""

import uuid
from unittest.mock import MagicMock

import pytest

from app.config import get_settings
from app.rate_limit import get_client_ip, get_rate_limit_key
from opsync.errors import RemoteUnavailableError


def _wire_op(client_id="device-a", **overrides):
    op = {
        "id": str(uuid.uuid4()),
        "table": "encrypted",
        "type": "create",
        "payload": {"ciphertext": "AAAA", "iv": "BBBB"},
        "timestamp": 1700000000000,
        "clientId": client_id,
        "keyHash": "0011223344556677",
    }
    op["key"] = op["id"]
    op.update(overrides)
    return op


class TestAuth:
    def test_missing_token(self, client, store):
        response = client.get("/api/sync/pull")
        assert response.status_code == 401
        assert response.json()["detail"] == "Unauthorized"

    def test_wrong_token(self, client, store):
        response = client.post(
            "/api/sync/push", json={"ops": [_wire_op()]}, headers={"X-Access-Token": "wrong"}
        )
        assert response.status_code == 401
        assert store.pull(0).empty

    def test_root_and_health_are_public(self, client, store):
        assert client.get("/").json()["status"] == "ok"
        health = client.get("/health").json()
        assert health["status"] == "ok"
        assert health["store"]["backend"] == "sqlite"


class TestPush:
    def test_push_assigns_sequence(self, client, auth_headers, store):
        response = client.post(
            "/api/sync/push", json={"ops": [_wire_op(), _wire_op()]}, headers=auth_headers
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "cursor": 2, "count": 2}

    def test_duplicate_push_is_ignored(self, client, auth_headers, store):
        op = _wire_op()
        client.post("/api/sync/push", json={"ops": [op]}, headers=auth_headers)
        again = client.post("/api/sync/push", json={"ops": [op]}, headers=auth_headers).json()

        assert again["count"] == 0
        assert again["cursor"] == 1

    def test_client_id_from_header(self, client, auth_headers, store):
        headers = {**auth_headers, "X-Client-ID": "device-b"}
        client.post("/api/sync/push", json={"ops": [_wire_op(client_id=None)]}, headers=headers)
        assert store.pull(0).ops[0].client_id == "device-b"

    @pytest.mark.parametrize(
        "op",
        [
            {"table": "encrypted", "type": "create"},
            {"id": "x", "table": "encrypted", "type": "upsert"},
            {"id": "", "table": "encrypted", "type": "create"},
        ],
    )
    def test_invalid_operations_rejected(self, client, auth_headers, store, op):
        response = client.post("/api/sync/push", json={"ops": [op]}, headers=auth_headers)
        assert response.status_code == 422

    def test_oversized_push_rejected(self, client, auth_headers, store):
        ops = [_wire_op() for _ in range(1001)]
        response = client.post("/api/sync/push", json={"ops": ops}, headers=auth_headers)
        assert response.status_code == 422

    def test_store_outage_is_503(self, client, auth_headers, monkeypatch):
        broken = MagicMock()
        broken.push.side_effect = RemoteUnavailableError("sheet quota")
        monkeypatch.setattr("app.database._store", broken)

        response = client.post("/api/sync/push", json={"ops": [_wire_op()]}, headers=auth_headers)
        assert response.status_code == 503


class TestPull:
    def test_pull_returns_ops_in_order(self, client, auth_headers, store):
        sent = [_wire_op(), _wire_op()]
        client.post("/api/sync/push", json={"ops": sent}, headers=auth_headers)

        data = client.get("/api/sync/pull", params={"cursor": 0}, headers=auth_headers).json()

        assert [op["id"] for op in data["ops"]] == [op["id"] for op in sent]
        assert [op["serverSeq"] for op in data["ops"]] == [1, 2]
        assert data["ops"][0]["keyHash"] == "0011223344556677"
        assert data["cursor"] == 2

    def test_pull_excludes_caller(self, client, auth_headers, store):
        client.post(
            "/api/sync/push",
            json={"ops": [_wire_op("device-a"), _wire_op("device-b")]},
            headers=auth_headers,
        )

        by_param = client.get(
            "/api/sync/pull", params={"cursor": 0, "clientId": "device-a"}, headers=auth_headers
        ).json()
        by_header = client.get(
            "/api/sync/pull", params={"cursor": 0}, headers={**auth_headers, "X-Client-ID": "device-a"}
        ).json()

        for data in (by_param, by_header):
            assert [op["clientId"] for op in data["ops"]] == ["device-b"]
            assert data["cursor"] == 2

    def test_limit_is_capped(self, client, auth_headers, store, monkeypatch):
        monkeypatch.setattr(get_settings(), "max_pull_limit", 2)
        client.post("/api/sync/push", json={"ops": [_wire_op() for _ in range(5)]}, headers=auth_headers)

        data = client.get("/api/sync/pull", params={"cursor": 0, "limit": 500}, headers=auth_headers).json()

        assert len(data["ops"]) == 2
        assert data["cursor"] == 2

    def test_negative_cursor_rejected(self, client, auth_headers, store):
        response = client.get("/api/sync/pull", params={"cursor": -1}, headers=auth_headers)
        assert response.status_code == 422

    def test_pending(self, client, auth_headers, store):
        client.post(
            "/api/sync/push",
            json={"ops": [_wire_op("device-a"), _wire_op("device-b"), _wire_op("device-b")]},
            headers=auth_headers,
        )
        data = client.get(
            "/api/sync/pending", params={"cursor": 1, "clientId": "device-a"}, headers=auth_headers
        ).json()
        assert data == {"count": 2}


class TestSheetBackend:
    def test_push_pull_over_sheet_store(self, client, auth_headers, sheet_store):
        client.post(
            "/api/sync/push",
            json={"ops": [_wire_op("device-a"), _wire_op("device-b")]},
            headers=auth_headers,
        )

        data = client.get(
            "/api/sync/pull", params={"cursor": 0, "clientId": "device-a"}, headers=auth_headers
        ).json()

        assert [op["serverSeq"] for op in data["ops"]] == [2]
        assert data["cursor"] == 2
        assert client.get("/health").json()["store"]["backend"] == "sheet"

    def test_pending_is_approximate(self, client, auth_headers, sheet_store):
        client.post("/api/sync/push", json={"ops": [_wire_op("device-a")]}, headers=auth_headers)
        data = client.get(
            "/api/sync/pending", params={"cursor": 0, "clientId": "device-a"}, headers=auth_headers
        ).json()
        assert data == {"count": 1}


class TestClientIp:
    def _request(self, peer, forwarded=None):
        request = MagicMock()
        request.client.host = peer
        request.headers = {"x-forwarded-for": forwarded} if forwarded else {}
        return request

    def test_forwarded_for_honored_behind_trusted_proxy(self):
        assert get_client_ip(self._request("10.0.0.5", "203.0.113.9, 10.0.0.5")) == "203.0.113.9"

    def test_forwarded_for_ignored_from_untrusted_peer(self):
        assert get_client_ip(self._request("198.51.100.7", "203.0.113.9")) == "198.51.100.7"


class TestRateLimitKey:
    def _token(self):
        return {"x-access-token": get_settings().access_token}

    def _request(self, headers=None, params=None, peer="198.51.100.7"):
        request = MagicMock()
        request.client.host = peer
        request.headers = headers or {}
        request.query_params = params or {}
        return request

    def test_authenticated_device_gets_own_bucket(self):
        a = self._request({**self._token(), "x-client-id": "device-a"})
        b = self._request({**self._token(), "x-client-id": "device-b"})

        assert get_rate_limit_key(a) == "client:device-a"
        assert get_rate_limit_key(b) == "client:device-b"

    def test_client_id_query_param_used_for_pull(self):
        request = self._request(self._token(), params={"clientId": "device-a"})
        assert get_rate_limit_key(request) == "client:device-a"

    def test_bad_token_falls_back_to_ip(self):
        request = self._request({"x-access-token": "wrong", "x-client-id": "device-a"})
        assert get_rate_limit_key(request) == "ip:198.51.100.7"

    def test_missing_client_id_falls_back_to_ip(self):
        request = self._request(
            {**self._token(), "x-forwarded-for": "203.0.113.9"}, peer="10.0.0.5"
        )
        assert get_rate_limit_key(request) == "ip:203.0.113.9"

    def test_devices_behind_one_address_have_separate_budgets(
        self, client, auth_headers, store, monkeypatch
    ):
        monkeypatch.setattr(get_settings(), "rate_limit", "2/minute")
        a = {**auth_headers, "X-Client-ID": f"device-{uuid.uuid4()}"}
        b = {**auth_headers, "X-Client-ID": f"device-{uuid.uuid4()}"}

        codes = [client.get("/api/sync/pending", headers=a).status_code for _ in range(3)]

        assert codes == [200, 200, 429]
        assert client.get("/api/sync/pending", headers=b).status_code == 200
