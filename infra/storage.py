"""
Persistent JSON storage.

Atomic document writes (temp file + rename) and an advisory lock-file for
serializing writers across coroutines and processes on the same host.

Rules:
- Reads never raise: missing or corrupt files yield the default document
- Writes never leave a partially written target behind
- Every mutation of shared state runs inside file_lock()
"""

import asyncio
import copy
import json
import logging
import os
import tempfile
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Tuple, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT_MS = 5_000
DEFAULT_LOCK_STALE_MS = 30_000
LOCK_POLL_INTERVAL_S = 0.025


class LockTimeoutError(TimeoutError):
    """Advisory lock could not be acquired in time."""
    pass


def ensure_dir(path: Union[str, Path]) -> Path:
    """Create a directory (owner-only) if missing."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    return path


def read_json(path: Union[str, Path], default: T) -> T:
    """
    Read a JSON document.

    Returns a deep copy of ``default`` when the file is missing or unparseable,
    so callers may mutate the result freely.
    """
    path = Path(path)
    if not path.exists():
        return copy.deepcopy(default)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read JSON document {path}: {e}")
        return copy.deepcopy(default)


def write_json(path: Union[str, Path], value: Any) -> None:
    """
    Atomically replace ``path`` with the JSON serialization of ``value``.

    The temp file is created next to the target (same filesystem) with mode 0600
    and renamed over it; a failed write leaves the previous document intact.
    """
    path = Path(path)
    ensure_dir(path.parent)
    text = json.dumps(value, ensure_ascii=False, indent=2) + "\n"

    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
        try:
            os.chmod(path, 0o600)
        except OSError:
            pass
    finally:
        if os.path.exists(tmp):
            try:
                os.unlink(tmp)
            except OSError:
                pass


def _try_create_marker(lock_path: Path) -> bool:
    try:
        fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    except FileExistsError:
        return False
    try:
        os.write(fd, f"{os.getpid()}\n{time.time():.3f}\n".encode("utf-8"))
    finally:
        os.close(fd)
    return True


def _reclaim_if_stale(lock_path: Path, stale_s: float) -> bool:
    """Remove an abandoned marker. Returns True if the caller should retry at once."""
    try:
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return True
    if age <= stale_s:
        return False
    try:
        lock_path.unlink()
        logger.warning(f"Reclaimed stale lock {lock_path} (age={age:.1f}s)")
        return True
    except FileNotFoundError:
        return True
    except OSError:
        return False


@asynccontextmanager
async def file_lock(
    path: Union[str, Path],
    *,
    timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
    stale_ms: int = DEFAULT_LOCK_STALE_MS,
) -> AsyncIterator[Path]:
    """
    Hold an exclusive advisory lock for ``path`` (marker file ``<path>.lock``).

    Contention is handled by cooperative polling with asyncio.sleep, so the event
    loop keeps serving other requests while waiting.

    Raises:
        LockTimeoutError: lock not acquired within ``timeout_ms``
    """
    path = Path(path)
    ensure_dir(path.parent)
    lock_path = path.with_name(path.name + ".lock")
    timeout_s = max(0, int(timeout_ms)) / 1000.0
    stale_s = max(1_000, int(stale_ms)) / 1000.0
    started = time.monotonic()

    while not _try_create_marker(lock_path):
        if _reclaim_if_stale(lock_path, stale_s):
            continue
        if time.monotonic() - started > timeout_s:
            raise LockTimeoutError(f"Timeout acquiring lock for {path}")
        await asyncio.sleep(LOCK_POLL_INTERVAL_S)

    try:
        yield lock_path
    finally:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass


async def with_file_lock(
    path: Union[str, Path],
    fn: Callable[[], Union[T, Awaitable[T]]],
    *,
    timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
    stale_ms: int = DEFAULT_LOCK_STALE_MS,
) -> T:
    """Run ``fn`` (sync or async) while holding the lock for ``path``."""
    async with file_lock(path, timeout_ms=timeout_ms, stale_ms=stale_ms):
        result = fn()
        if asyncio.iscoroutine(result):
            result = await result
        return result


class JsonDocumentStore:
    """
    A versioned JSON document with a process-local cache.

    The cache is keyed on the file's (inode, mtime_ns, size), so writes made by other
    processes are picked up on the next read.

    The on-disk shape is ``{"version": <schema_version>, ...}``. A document with a
    different version, a non-object payload or a parse failure is replaced by the
    default document on read.
    """

    def __init__(
        self,
        file_path: Union[str, Path],
        default_factory: Callable[[], dict],
        schema_version: int = 1,
        validate: Optional[Callable[[dict], bool]] = None,
    ):
        self.file_path = Path(file_path)
        self._default_factory = default_factory
        self._schema_version = schema_version
        self._validate = validate
        self._cache: Optional[dict] = None
        self._cache_signature: Optional[Tuple[int, int, int]] = None

    def _load(self) -> dict:
        raw = read_json(self.file_path, None)
        if raw is None:
            return self._default_factory()
        if not isinstance(raw, dict) or raw.get("version") != self._schema_version:
            logger.error(
                f"Unexpected document schema in {self.file_path}; resetting to default",
                extra={"expected_version": self._schema_version},
            )
            return self._default_factory()
        if self._validate is not None and not self._validate(raw):
            logger.error(f"Invalid document in {self.file_path}; resetting to default")
            return self._default_factory()
        return raw

    def _signature(self) -> Optional[Tuple[int, int, int]]:
        try:
            stat = self.file_path.stat()
        except FileNotFoundError:
            return None
        return stat.st_ino, stat.st_mtime_ns, stat.st_size

    def read(self) -> dict:
        """Return the cached document, reloading it when the file changed on disk."""
        signature = self._signature()
        if self._cache is None or signature != self._cache_signature:
            self._cache = self._load()
            self._cache_signature = signature
        return self._cache

    def write(self, document: dict) -> None:
        """Persist ``document`` atomically. Callers must hold the lock."""
        write_json(self.file_path, document)
        self._cache = document
        self._cache_signature = self._signature()

    async def update(self, mutator: Callable[[dict], T], **lock_options: Any) -> T:
        """
        Apply ``mutator`` to a fresh copy of the document under the file lock.

        The document is re-read from disk inside the lock so concurrent writers in
        other processes are not overwritten. Returns whatever ``mutator`` returns.
        """
        async with file_lock(self.file_path, **lock_options):
            document = self._load()
            result = mutator(document)
            self.write(document)
            return result
