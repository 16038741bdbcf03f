"""
Size-capped request body reading.
"""

from fastapi import Request

MAX_WEBHOOK_BODY_BYTES = 1024 * 1024
MAX_PAIRING_API_BODY_BYTES = 32 * 1024


class BodyTooLargeError(ValueError):
    """Request body exceeded its limit (HTTP 413)."""
    pass


async def read_body_limited(request: Request, max_bytes: int) -> bytes:
    """
    Read the request body, aborting as soon as it exceeds ``max_bytes``.

    Raises:
        BodyTooLargeError: declared or streamed size over the limit
    """
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise BodyTooLargeError(f"Request body too large (limit={max_bytes})")

    chunks = []
    total = 0
    async for chunk in request.stream():
        total += len(chunk)
        if total > max_bytes:
            raise BodyTooLargeError(f"Request body too large (limit={max_bytes})")
        chunks.append(chunk)
    return b"".join(chunks)
