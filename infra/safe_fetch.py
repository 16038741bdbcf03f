"""
Safe outbound fetch layer.

SECURITY BOUNDARY - every URL handed to us by a remote party (image/media URLs)
goes through validate_external_url() before any connection is attempted.

- Scheme must be http/https
- localhost / *.localhost / *.local are refused
- Literal IPs and every DNS-resolved address must be public
- Bodies are streamed and aborted as soon as they exceed the byte cap
- Each redirect hop is validated again
"""

import asyncio
import base64
import binascii
import ipaddress
import logging
import os
import re
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Union

import httpx

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT_S = 10.0
MAX_IMAGE_BYTES = 5 * 1024 * 1024
MAX_DATA_URL_BYTES = 3 * 1024 * 1024
MAX_REDIRECTS = 3

Resolver = Callable[[str], Awaitable[List[str]]]

_PRIVATE_V4 = [
    ipaddress.ip_network(net)
    for net in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "100.64.0.0/10",  # CGNAT
        "224.0.0.0/3",  # multicast + reserved
    )
]
_PRIVATE_V6 = [
    ipaddress.ip_network(net)
    for net in (
        "::/128",
        "::1/128",
        "fe80::/10",
        "fc00::/7",
        "ff00::/8",
    )
]
_DATA_URL_RE = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)


class SafeFetchError(Exception):
    """Outbound fetch refused or failed."""
    pass


class UnsafeUrlError(SafeFetchError):
    """URL targets a forbidden scheme, host or address."""
    pass


class ResponseTooLargeError(SafeFetchError):
    """Response body exceeded the configured byte cap."""
    pass


class FetchTimeoutError(SafeFetchError):
    """Fetch did not complete within the hard timeout."""
    pass


def is_private_ip(address: Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address]) -> bool:
    """
    Check if an address is private, loopback, link-local, CGNAT, multicast or reserved.

    Unparseable input counts as private.
    """
    try:
        ip = ipaddress.ip_address(address) if isinstance(address, str) else address
    except ValueError:
        return True

    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is not None:
            return is_private_ip(ip.ipv4_mapped)
        return any(ip in net for net in _PRIVATE_V6)
    return any(ip in net for net in _PRIVATE_V4)


def _is_local_hostname(hostname: str) -> bool:
    host = hostname.lower().rstrip(".")
    return host == "localhost" or host.endswith(".localhost") or host.endswith(".local")


async def system_resolver(hostname: str) -> List[str]:
    """Resolve a hostname to all of its addresses using the event loop resolver."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, family=socket.AF_UNSPEC, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


async def validate_external_url(url: str, resolver: Optional[Resolver] = None) -> httpx.URL:
    """
    Validate a remote-supplied URL before fetching it.

    Raises:
        UnsafeUrlError: bad scheme, local hostname, private literal IP,
            DNS failure, or any resolved address in a private range
    """
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError):
        raise UnsafeUrlError("Invalid URL")

    if parsed.scheme.lower() not in ("http", "https"):
        raise UnsafeUrlError(f"URL scheme must be http or https, got '{parsed.scheme}'")

    hostname = parsed.host
    if not hostname:
        raise UnsafeUrlError("URL has no hostname")

    if _is_local_hostname(hostname):
        raise UnsafeUrlError("Local hostnames are not allowed")

    try:
        literal = ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        literal = None

    if literal is not None:
        if is_private_ip(literal):
            raise UnsafeUrlError("Private or loopback IP addresses are not allowed")
        return parsed

    resolve = resolver or system_resolver
    try:
        addresses = await resolve(hostname)
    except (OSError, socket.gaierror) as e:
        raise UnsafeUrlError(f"DNS resolution failed for {hostname}: {e}")

    if not addresses:
        raise UnsafeUrlError(f"DNS resolution returned no addresses for {hostname}")
    for address in addresses:
        if is_private_ip(address):
            raise UnsafeUrlError(f"Hostname {hostname} resolves to a private address")

    return parsed


@dataclass
class FetchResult:
    """A fully read, size-bounded response."""

    status_code: int
    headers: httpx.Headers
    content: bytes
    url: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


async def read_response_bytes_with_limit(response: httpx.Response, max_bytes: int) -> bytes:
    """
    Read a streamed response body, aborting once it exceeds ``max_bytes``.

    The Content-Length header is checked first; the running total is enforced
    during streaming for chunked or lying responses.
    """
    content_length = response.headers.get("content-length")
    if content_length:
        try:
            declared = int(content_length)
        except ValueError:
            declared = None
        if declared is not None and declared > max_bytes:
            raise ResponseTooLargeError(f"Response too large: {declared} bytes (limit={max_bytes})")

    chunks = []
    total = 0
    async for chunk in response.aiter_bytes():
        total += len(chunk)
        if total > max_bytes:
            raise ResponseTooLargeError(f"Response too large (limit={max_bytes})")
        chunks.append(chunk)
    return b"".join(chunks)


class SafeFetcher:
    """
    Bounded fetcher for untrusted URLs.

    Holds no connection state of its own; the shared httpx.AsyncClient is injected.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout_s: float = DEFAULT_FETCH_TIMEOUT_S,
        max_bytes: int = MAX_IMAGE_BYTES,
        resolver: Optional[Resolver] = None,
        max_redirects: int = MAX_REDIRECTS,
    ):
        self.client = client
        self.timeout_s = timeout_s
        self.max_bytes = max_bytes
        self.resolver = resolver
        self.max_redirects = max_redirects

    async def fetch(
        self,
        url: str,
        *,
        max_bytes: Optional[int] = None,
        timeout_s: Optional[float] = None,
    ) -> FetchResult:
        """
        GET an untrusted URL with SSRF validation, hard timeout and byte cap.

        Raises:
            UnsafeUrlError, ResponseTooLargeError, FetchTimeoutError, SafeFetchError
        """
        limit = self.max_bytes if max_bytes is None else max_bytes
        timeout = self.timeout_s if timeout_s is None else timeout_s
        try:
            return await asyncio.wait_for(self._fetch_following_redirects(url, limit, timeout), timeout)
        except asyncio.TimeoutError:
            raise FetchTimeoutError(f"Fetch timed out after {timeout}s")

    async def _fetch_following_redirects(self, url: str, limit: int, timeout: float) -> FetchResult:
        current = url
        for _ in range(self.max_redirects + 1):
            target = await validate_external_url(current, self.resolver)
            try:
                async with self.client.stream(
                    "GET", target, timeout=timeout, follow_redirects=False
                ) as response:
                    if response.is_redirect:
                        location = response.headers.get("location")
                        if not location:
                            raise SafeFetchError("Redirect without Location header")
                        current = str(target.join(location))
                        continue
                    content = await read_response_bytes_with_limit(response, limit)
                    return FetchResult(
                        status_code=response.status_code,
                        headers=response.headers,
                        content=content,
                        url=str(target),
                    )
            except httpx.TimeoutException as e:
                raise FetchTimeoutError(f"Fetch timed out: {e}")
            except httpx.HTTPError as e:
                raise SafeFetchError(f"HTTP request failed: {e}")
        raise SafeFetchError(f"Too many redirects (limit={self.max_redirects})")


def decode_data_url(data_url: str, max_bytes: int = MAX_DATA_URL_BYTES) -> tuple:
    """
    Decode ``data:<type>;base64,<payload>``.

    Returns:
        (content_type, bytes)

    Raises:
        SafeFetchError: malformed data URL
        ResponseTooLargeError: decoded payload over ``max_bytes``
    """
    match = _DATA_URL_RE.match(data_url.strip())
    if not match:
        raise SafeFetchError("Invalid data URL")
    content_type, payload = match.group(1), match.group(2)
    # Cheap upper bound before decoding.
    if len(payload) * 3 // 4 > max_bytes + 3:
        raise ResponseTooLargeError(f"data URL too large (limit={max_bytes} bytes)")
    try:
        data = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError):
        raise SafeFetchError("Invalid base64 payload in data URL")
    if len(data) > max_bytes:
        raise ResponseTooLargeError(f"data URL too large (limit={max_bytes} bytes)")
    return content_type, data


def is_probably_file_path(value: str) -> bool:
    return value.startswith("/") or bool(re.match(r"^[A-Za-z]:\\", value))


def resolve_safe_local_path(input_path: Union[str, Path], allowed_dir: Union[str, Path]) -> Path:
    """
    Resolve ``input_path`` and require it to stay inside ``allowed_dir``.

    Both sides are resolved through symlinks before comparison.

    Raises:
        UnsafeUrlError: path escapes the allowed directory
        FileNotFoundError: path does not exist
    """
    real = Path(os.path.realpath(input_path))
    if not real.exists():
        raise FileNotFoundError(str(input_path))
    base = Path(os.path.realpath(allowed_dir))
    if real != base and base not in real.parents:
        raise UnsafeUrlError("Local file is outside the allowed directory")
    return real


def infer_image_ext(content_type: str) -> str:
    ct = (content_type or "").lower()
    if "png" in ct:
        return "png"
    if "gif" in ct:
        return "gif"
    if "webp" in ct:
        return "webp"
    return "jpg"


def content_type_for_ext(path: Path) -> str:
    return {
        ".png": "image/png",
        ".gif": "image/gif",
        ".webp": "image/webp",
    }.get(path.suffix.lower(), "image/jpeg")
