"""Pytest configuration and fixtures."""

import json
import sys
from pathlib import Path

import httpx
import pytest

# Add project root to sys.path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from infra.bootstrap import RuntimeSettings, WebhookRuntime  # noqa: E402
from infra.config import ChannelConfig  # noqa: E402
from infra.safe_fetch import SafeFetcher  # noqa: E402
from services.agent import StubAgentDispatcher  # noqa: E402
from transport.wechat_mp.schemas import WechatMpAccount  # noqa: E402
from transport.wechat_mp.sender import WechatMpClient  # noqa: E402

# 43 chars; base64-decodes (with "=") to 32 bytes
TEST_AES_KEY = "abcdefghijklmnopqrstuvwxyz0123456789ABCDEFG"
TEST_APP_ID = "wx1234567890abcdef"
TEST_TOKEN = "test_token"


class FakeClock:
    """Manually advanced clock for time-based components."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "wemp"
    path.mkdir()
    return path


@pytest.fixture
def make_account():
    """Build a configured, enabled account; keyword overrides win."""

    def _make(account_id: str = "default", **overrides) -> WechatMpAccount:
        fields = dict(
            account_id=account_id,
            enabled=True,
            app_id=TEST_APP_ID,
            app_secret="secret",
            token=TEST_TOKEN,
            encoding_aes_key=TEST_AES_KEY,
            webhook_path="/wechat-mp",
        )
        fields.update(overrides)
        return WechatMpAccount(**fields)

    return _make


@pytest.fixture
def account(make_account):
    return make_account()


# ============================================================================
# CHANNEL API DOUBLE
# ============================================================================

PUBLIC_DNS = {
    "img.example.com": ["93.184.216.34"],
    "mmbiz.qpic.cn": ["93.184.216.40"],
}

IMAGE_BYTES = b"\xff\xd8\xff\xe0fake-jpeg"


async def public_resolver(hostname):
    if hostname not in PUBLIC_DNS:
        raise OSError(f"NXDOMAIN {hostname}")
    return PUBLIC_DNS[hostname]


class FakeChannelApi:
    """
    httpx.MockTransport handler standing in for api.weixin.qq.com and an image CDN.

    ``errors`` maps an API path to the (errcode, errmsg) it should answer with.
    """

    def __init__(self):
        self.requests = []
        self.messages = []
        self.typing = []
        self.token_calls = 0
        self.uploads = 0
        self.errors = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host in PUBLIC_DNS:
            return httpx.Response(200, content=IMAGE_BYTES, headers={"content-type": "image/jpeg"})

        if path in self.errors:
            errcode, errmsg = self.errors[path]
            return httpx.Response(200, json={"errcode": errcode, "errmsg": errmsg})

        if path == "/cgi-bin/token":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_calls}", "expires_in": 7200})
        if path == "/cgi-bin/message/custom/send":
            self.messages.append(json.loads(request.content))
            return httpx.Response(200, json={"errcode": 0, "errmsg": "ok"})
        if path == "/cgi-bin/message/custom/typing":
            self.typing.append(json.loads(request.content))
            return httpx.Response(200, json={"errcode": 0, "errmsg": "ok"})
        if path == "/cgi-bin/media/upload":
            self.uploads += 1
            return httpx.Response(200, json={"type": "image", "media_id": f"media-{self.uploads}"})

        return httpx.Response(404, json={"errcode": 404, "errmsg": "not found"})

    def texts(self, open_id=None):
        return [
            m["text"]["content"]
            for m in self.messages
            if m["msgtype"] == "text" and (open_id is None or m["touser"] == open_id)
        ]


@pytest.fixture
def channel_api():
    return FakeChannelApi()


@pytest.fixture
def dns_resolver():
    return public_resolver


@pytest.fixture
def http_client(channel_api):
    return httpx.AsyncClient(transport=httpx.MockTransport(channel_api))


@pytest.fixture
def wemp_client(http_client, data_dir, clock):
    fetcher = SafeFetcher(http_client, resolver=public_resolver)
    return WechatMpClient(http_client, fetcher, data_dir / "images", clock=clock)


# ============================================================================
# RUNTIME
# ============================================================================

@pytest.fixture
def make_runtime(data_dir, http_client):
    """
    Build a WebhookRuntime over the FakeChannelApi with a stub agent.

    Keyword arguments override RuntimeSettings fields; ``agent``,
    ``allow_list`` and ``approver`` are passed through as collaborators.
    """

    def _make(**overrides) -> WebhookRuntime:
        collaborators = {k: overrides.pop(k) for k in ("agent", "allow_list", "approver") if k in overrides}
        collaborators.setdefault("agent", StubAgentDispatcher())
        fields = dict(
            data_dir=data_dir,
            agent_invoke_url="",
            pairing_approval="local",
            allowlist_file="",
            debounce_ms=0,
            ai_default_enabled=True,
            pairing_api_token="",
            prewarm_tokens=False,
        )
        fields.update(overrides)
        return WebhookRuntime(
            RuntimeSettings(**fields),
            ChannelConfig(),
            http_client=http_client,
            dns_resolver=public_resolver,
            **collaborators,
        )

    return _make
