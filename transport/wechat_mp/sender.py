"""
WeChat MP Channel API Client

Sends replies back through the customer-service message API.
No formatting intelligence. No retries.

Every remote-supplied URL goes through the SafeFetcher; requests to
api.weixin.qq.com use the shared client directly.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from infra.safe_fetch import (
    MAX_IMAGE_BYTES,
    SafeFetcher,
    SafeFetchError,
    content_type_for_ext,
    decode_data_url,
    infer_image_ext,
    is_probably_file_path,
    resolve_safe_local_path,
)
from infra.storage import ensure_dir

from .schemas import ChannelApiResult, WechatMpAccount

logger = logging.getLogger(__name__)

API_BASE = "https://api.weixin.qq.com"
DEFAULT_API_TIMEOUT_S = 10.0
TEXT_CHUNK_LIMIT = 600
TOKEN_REFRESH_MARGIN_S = 5 * 60
DEFAULT_TOKEN_TTL_S = 7200
# invalid credential, invalid token, token expired
TOKEN_ERRCODES = frozenset({40001, 40014, 42001})
MEDIA_CACHE_TTL_S = 3 * 24 * 3600 - 3600
MEDIA_CACHE_KEY_CHARS = 100


class ChannelApiError(Exception):
    """The channel API rejected a call or could not be reached."""

    def __init__(self, message: str, errcode: Optional[int] = None):
        super().__init__(message)
        self.errcode = errcode


@dataclass
class _CachedValue:
    value: str
    expires_at: float


def chunk_text(text: str, limit: int = TEXT_CHUNK_LIMIT) -> List[str]:
    """
    Split ``text`` into pieces of at most ``limit`` characters.

    Breaks on the last newline inside the window when there is one.
    """
    text = text or ""
    chunks = []
    while len(text) > limit:
        window = text[:limit]
        cut = window.rfind("\n")
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut].rstrip("\n"))
        text = text[cut:].lstrip("\n")
    if text.strip():
        chunks.append(text)
    return chunks


class WechatMpClient:
    """
    Customer-service message client for all configured accounts.

    Caches access tokens per account (refreshed five minutes early) and
    temporary media ids per source (three days minus one hour).
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        fetcher: SafeFetcher,
        images_dir: Path,
        api_base: str = API_BASE,
        timeout_s: float = DEFAULT_API_TIMEOUT_S,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.fetcher = fetcher
        self.images_dir = Path(images_dir)
        self.api_base = api_base.rstrip("/")
        self.timeout_s = timeout_s
        self._clock = clock
        self._tokens: Dict[str, _CachedValue] = {}
        self._media: Dict[str, _CachedValue] = {}

    # ========================================================================
    # ACCESS TOKEN
    # ========================================================================

    async def get_access_token(self, account: WechatMpAccount) -> str:
        """
        Return a cached access token or fetch a new one.

        Raises:
            ChannelApiError: credentials rejected or API unreachable
        """
        cached = self._tokens.get(account.account_id)
        if cached and self._clock() < cached.expires_at - TOKEN_REFRESH_MARGIN_S:
            return cached.value

        params = {"grant_type": "client_credential", "appid": account.app_id, "secret": account.app_secret}
        data = await self._request("GET", "/cgi-bin/token", params=params)
        token = data.get("access_token")
        if not token:
            raise ChannelApiError("Token response has no access_token")

        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_TTL_S)
        self._tokens[account.account_id] = _CachedValue(token, self._clock() + expires_in)
        logger.info(f"[wemp:{account.account_id}] Access token refreshed")
        return token

    def invalidate_access_token(self, account: WechatMpAccount) -> None:
        self._tokens.pop(account.account_id, None)

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self.client.request(method, self.api_base + path, timeout=self.timeout_s, **kwargs)
        except httpx.RequestError as e:
            raise ChannelApiError(f"HTTP request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            raise ChannelApiError(f"Channel API returned {response.status_code} with a non-JSON body")
        if not isinstance(data, dict):
            raise ChannelApiError("Channel API returned a non-object body")

        result = ChannelApiResult(**data)
        if result.errcode:
            raise ChannelApiError(f"{result.errcode} - {result.errmsg}", errcode=result.errcode)
        return data

    async def _call(self, account: WechatMpAccount, path: str, **kwargs) -> dict:
        """POST with the account's token; a rejected token is refreshed and the call retried once."""
        params = dict(kwargs.pop("params", None) or {})
        params["access_token"] = await self.get_access_token(account)
        try:
            return await self._request("POST", path, params=params, **kwargs)
        except ChannelApiError as e:
            if e.errcode not in TOKEN_ERRCODES:
                raise
            logger.warning(f"[wemp:{account.account_id}] Access token rejected ({e.errcode}); refreshing")
            self.invalidate_access_token(account)
        params["access_token"] = await self.get_access_token(account)
        return await self._request("POST", path, params=params, **kwargs)

    # ========================================================================
    # MESSAGES
    # ========================================================================

    async def send_custom_message(self, account: WechatMpAccount, payload: dict) -> None:
        await self._call(account, "/cgi-bin/message/custom/send", json=payload)

    async def send_text(self, account: WechatMpAccount, open_id: str, text: str) -> int:
        """
        Send ``text``, chunked at 600 characters.

        Returns:
            Number of messages sent

        Raises:
            ChannelApiError: a chunk failed; earlier chunks stay delivered
        """
        chunks = chunk_text(text)
        for chunk in chunks:
            await self.send_custom_message(
                account, {"touser": open_id, "msgtype": "text", "text": {"content": chunk}}
            )
        logger.info(
            f"[wemp:{account.account_id}] Text sent",
            extra={"open_id": open_id, "chunks": len(chunks)},
        )
        return len(chunks)

    async def send_typing(self, account: WechatMpAccount, open_id: str) -> bool:
        """Best effort; never raises."""
        try:
            await self._call(
                account, "/cgi-bin/message/custom/typing", json={"touser": open_id, "command": "Typing"}
            )
            return True
        except ChannelApiError as e:
            logger.debug(f"[wemp:{account.account_id}] Typing indicator failed: {e}")
            return False

    async def send_image(self, account: WechatMpAccount, open_id: str, media_id: str) -> None:
        await self.send_custom_message(
            account, {"touser": open_id, "msgtype": "image", "image": {"media_id": media_id}}
        )

    async def send_image_by_url(self, account: WechatMpAccount, open_id: str, source: str) -> None:
        """Upload ``source`` as temporary media, then send it."""
        media_id = await self.upload_temp_media(account, source, "image")
        await self.send_image(account, open_id, media_id)

    async def send_news(self, account: WechatMpAccount, open_id: str, articles: List[dict]) -> None:
        """Link-card message; each article has title, description, url and optional picurl."""
        await self.send_custom_message(
            account, {"touser": open_id, "msgtype": "news", "news": {"articles": articles}}
        )

    # ========================================================================
    # MEDIA
    # ========================================================================

    async def _load_media_source(self, source: str) -> Tuple[str, bytes]:
        if source.startswith("data:"):
            return decode_data_url(source)

        if is_probably_file_path(source):
            path = resolve_safe_local_path(source, self.images_dir)
            if path.stat().st_size > MAX_IMAGE_BYTES:
                raise ChannelApiError(f"Local image too large (limit={MAX_IMAGE_BYTES} bytes)")
            return content_type_for_ext(path), path.read_bytes()

        result = await self.fetcher.fetch(source, max_bytes=MAX_IMAGE_BYTES)
        if not result.ok:
            raise ChannelApiError(f"Image download failed: {result.status_code}")
        return result.content_type or "image/jpeg", result.content

    async def upload_temp_media(self, account: WechatMpAccount, source: str, media_type: str = "image") -> str:
        """
        Upload a data URL, an image under the images directory, or a remote URL
        as temporary media.

        Returns:
            media_id (cached for three days minus one hour)

        Raises:
            ChannelApiError: load or upload failed
        """
        cache_key = f"{account.account_id}:{media_type}:{source[:MEDIA_CACHE_KEY_CHARS]}"
        cached = self._media.get(cache_key)
        if cached and self._clock() < cached.expires_at:
            return cached.value

        try:
            content_type, content = await self._load_media_source(source)
        except (SafeFetchError, OSError) as e:
            raise ChannelApiError(f"Cannot load media source: {e}") from e

        filename = f"image.{infer_image_ext(content_type)}"
        data = await self._call(
            account,
            "/cgi-bin/media/upload",
            params={"type": media_type},
            files={"media": (filename, content, content_type)},
        )
        media_id = data.get("media_id")
        if not media_id:
            raise ChannelApiError("Upload response has no media_id")

        self._media[cache_key] = _CachedValue(media_id, self._clock() + MEDIA_CACHE_TTL_S)
        return media_id

    async def download_image_to_file(self, url: str, download_dir: Optional[Path] = None) -> Path:
        """
        Fetch a remote image into the images directory.

        Raises:
            SafeFetchError: URL rejected, too large or timed out
            ChannelApiError: non-2xx response
        """
        directory = ensure_dir(download_dir or self.images_dir)
        result = await self.fetcher.fetch(url, max_bytes=MAX_IMAGE_BYTES)
        if not result.ok:
            raise ChannelApiError(f"Image download failed: {result.status_code}")

        ext = infer_image_ext(result.content_type or "image/jpeg")
        path = directory / f"{int(self._clock() * 1000)}-{secrets.token_hex(6)}.{ext}"
        path.write_bytes(result.content)
        return path
