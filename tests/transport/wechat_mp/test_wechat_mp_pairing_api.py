"""
Pairing Approval API Tests

POST <webhook path>/api/pair {"code", "token"}

End-to-end: the user asks for a code in chat, an operator submits it, and the
next message goes to the personal agent.
"""

import re

import pytest
from fastapi.testclient import TestClient

from main import create_app
from services.approval import CommandPairingApprover
from transport.wechat_mp.pairing_api import PAIRED_NOTICE, find_account_by_token
from transport.wechat_mp.security import compute_signature

TIMESTAMP = "1700000000"
NONCE = "nonce-1"
OPEN_ID = "oUser123"
PAIR_TOKEN = "pair-secret"
PAIR_URL = "/wechat-mp/api/pair"


def post_text(client, account, content, msg_id):
    params = {"signature": compute_signature(account.token, TIMESTAMP, NONCE), "timestamp": TIMESTAMP, "nonce": NONCE}
    body = (
        "<xml><ToUserName>gh_test</ToUserName>"
        f"<FromUserName>{OPEN_ID}</FromUserName>"
        f"<CreateTime>{TIMESTAMP}</CreateTime>"
        "<MsgType>text</MsgType>"
        f"<Content>{content}</Content>"
        f"<MsgId>{msg_id}</MsgId></xml>"
    )
    return client.post("/wechat-mp", params=params, content=body)


@pytest.fixture
def pair_account(make_account):
    return make_account(pairing_api_token=PAIR_TOKEN)


@pytest.fixture
def runtime(make_runtime, pair_account):
    runtime = make_runtime()
    runtime.register_account(pair_account)
    return runtime


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


class TestPairingFlow:

    def test_code_from_chat_approved_through_api(self, client, runtime, pair_account, channel_api):
        post_text(client, pair_account, "配对", msg_id="1")
        match = re.search(r"配对码: (\d{6})", channel_api.texts(OPEN_ID)[-1])
        assert match
        code = match.group(1)

        response = client.post(PAIR_URL, json={"code": code, "token": PAIR_TOKEN})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "id": f"default:{OPEN_ID}",
            "accountId": "default",
            "openId": OPEN_ID,
        }
        assert channel_api.texts(OPEN_ID)[-1] == PAIRED_NOTICE

        post_text(client, pair_account, "你好", msg_id="2")
        assert runtime.agent.requests[-1].agent_id == "main"

    def test_code_is_single_use(self, client, pair_account, channel_api):
        post_text(client, pair_account, "配对", msg_id="1")
        code = re.search(r"配对码: (\d{6})", channel_api.texts(OPEN_ID)[-1]).group(1)
        assert client.post(PAIR_URL, json={"code": code, "token": PAIR_TOKEN}).status_code == 200

        response = client.post(PAIR_URL, json={"code": code, "token": PAIR_TOKEN})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid or expired pairing code"

    def test_numeric_code_accepted(self, client, pair_account, channel_api):
        post_text(client, pair_account, "配对", msg_id="1")
        code = re.search(r"配对码: (\d{6})", channel_api.texts(OPEN_ID)[-1]).group(1)
        assert client.post(PAIR_URL, json={"code": int(code), "token": PAIR_TOKEN}).status_code == 200


class TestPairingApiErrors:

    def test_disabled_without_token(self, make_runtime, account):
        runtime = make_runtime()
        runtime.register_account(account)
        with TestClient(create_app(runtime)) as client:
            response = client.post(PAIR_URL, json={"code": "123456", "token": "anything"})
        assert response.status_code == 404

    def test_wrong_token(self, client):
        response = client.post(PAIR_URL, json={"code": "123456", "token": "nope"})
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_missing_token(self, client):
        assert client.post(PAIR_URL, json={"code": "123456"}).status_code == 401

    def test_missing_code(self, client):
        response = client.post(PAIR_URL, json={"token": PAIR_TOKEN, "code": "  "})
        assert response.status_code == 400
        assert response.json()["error"] == "Missing code"

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'{"code": {"nested": true}}'])
    def test_invalid_json(self, client, body):
        response = client.post(PAIR_URL, content=body, headers={"content-type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid JSON"

    def test_body_too_large(self, client):
        body = b'{"token": "' + b"x" * (33 * 1024) + b'"}'
        assert client.post(PAIR_URL, content=body).status_code == 413

    def test_rate_limited(self, client):
        statuses = [client.post(PAIR_URL, json={"code": "1", "token": "nope"}).status_code for _ in range(30)]
        assert set(statuses) == {401}

        response = client.post(PAIR_URL, json={"code": "1", "token": PAIR_TOKEN})

        assert response.status_code == 429
        assert int(response.headers["retry-after"]) >= 1

    def test_no_approval_runtime(self, make_runtime, pair_account):
        runtime = make_runtime(approver=CommandPairingApprover(executable="definitely-not-installed-xyz"))
        runtime.register_account(pair_account)
        with TestClient(create_app(runtime)) as client:
            response = client.post(PAIR_URL, json={"code": "123456", "token": PAIR_TOKEN})
        assert response.status_code == 501

    def test_get_on_pair_path_is_not_the_api(self, client):
        assert client.get(PAIR_URL).status_code == 403


class TestTokenLookup:

    def test_matches_any_account_on_path(self, make_account):
        accounts = [
            make_account("a", pairing_api_token="alpha"),
            make_account("b", pairing_api_token=""),
            make_account("c", pairing_api_token="gamma"),
        ]
        assert find_account_by_token(accounts, "gamma").account_id == "c"
        assert find_account_by_token(accounts, "") is None
        assert find_account_by_token(accounts, "beta") is None
