"""
WeChat MP Signature Verification & Envelope Crypto

SECURITY BOUNDARY - authenticate webhook requests and open encrypted envelopes.
No agent imports. No retries. No logging of secrets or plaintext above debug.

Handshake signature:  sha1(sort([token, timestamp, nonce]))
Message signature:    sha1(sort([token, timestamp, nonce, Encrypt]))   (safe mode)

Encrypted envelopes use the provider's published scheme:
AES-256-CBC, key = base64(EncodingAESKey + "="), IV = key[:16], PKCS#7 padding
with a 32-byte block, plaintext = random(16) | len(4, big endian) | msg | appid.
The trailing appid and the length prefix are checked on every decrypt.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import os
import struct
from dataclasses import dataclass
from typing import Mapping, Optional

from Crypto.Cipher import AES

from .schemas import InboundEvent, WechatMpAccount

logger = logging.getLogger(__name__)

PKCS7_BLOCK_SIZE = 32
RANDOM_PREFIX_BYTES = 16


class EnvelopeError(Exception):
    """Webhook envelope rejected."""
    pass


class AuthenticationFailure(EnvelopeError):
    """Signature or integrity check failed (HTTP 403)."""
    pass


class MalformedPayload(EnvelopeError):
    """Body could not be decoded or parsed (HTTP 400)."""
    pass


# ============================================================================
# SIGNATURES
# ============================================================================

def compute_signature(*parts: str) -> str:
    """SHA-1 hex digest over the lexicographically sorted, concatenated parts."""
    joined = "".join(sorted(str(p) for p in parts))
    return hashlib.sha1(joined.encode("utf-8")).hexdigest()


def verify_signature(token: str, signature: str, timestamp: str, nonce: str) -> bool:
    """
    Verify the GET handshake / plaintext POST signature.

    An empty token never verifies. Comparison is constant-time.
    """
    if not token or not signature:
        return False
    expected = compute_signature(token, timestamp or "", nonce or "")
    return hmac.compare_digest(expected, signature.lower())


def verify_message_signature(
    token: str,
    msg_signature: str,
    timestamp: str,
    nonce: str,
    encrypted: str,
) -> bool:
    """Verify the safe-mode signature that also covers the Encrypt field."""
    if not token or not msg_signature:
        return False
    expected = compute_signature(token, timestamp or "", nonce or "", encrypted)
    return hmac.compare_digest(expected, msg_signature.lower())


# ============================================================================
# AES ENVELOPE
# ============================================================================

def derive_aes_key(encoding_aes_key: str) -> bytes:
    """
    Decode the 43-character EncodingAESKey into the 32-byte AES key.

    Raises:
        ValueError: key is missing or does not decode to 32 bytes
    """
    if not encoding_aes_key:
        raise ValueError("EncodingAESKey not configured")
    try:
        key = base64.b64decode(encoding_aes_key + "=")
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"EncodingAESKey is not valid base64: {e}")
    if len(key) != 32:
        raise ValueError("EncodingAESKey must decode to 32 bytes")
    return key


def _pkcs7_pad(data: bytes) -> bytes:
    amount = PKCS7_BLOCK_SIZE - (len(data) % PKCS7_BLOCK_SIZE)
    return data + bytes([amount]) * amount


def _pkcs7_unpad(data: bytes) -> bytes:
    if not data:
        raise MalformedPayload("Empty plaintext")
    amount = data[-1]
    if amount < 1 or amount > PKCS7_BLOCK_SIZE or amount > len(data):
        raise MalformedPayload("Invalid padding")
    return data[:-amount]


def encrypt_message(
    plaintext: str,
    encoding_aes_key: str,
    app_id: str,
    random_prefix: Optional[bytes] = None,
) -> str:
    """
    Encrypt ``plaintext`` into a base64 Encrypt field, the way the platform does.

    Inverse of decrypt_message.
    """
    key = derive_aes_key(encoding_aes_key)
    prefix = random_prefix if random_prefix is not None else os.urandom(RANDOM_PREFIX_BYTES)
    body = plaintext.encode("utf-8")
    raw = prefix + struct.pack(">I", len(body)) + body + app_id.encode("utf-8")
    cipher = AES.new(key, AES.MODE_CBC, key[:16])
    return base64.b64encode(cipher.encrypt(_pkcs7_pad(raw))).decode("ascii")


def decrypt_message(encrypted: str, encoding_aes_key: str, app_id: str) -> str:
    """
    Decrypt a base64 Encrypt field and return the inner envelope text.

    Raises:
        MalformedPayload: bad base64, bad padding, inconsistent length or non-UTF-8
        AuthenticationFailure: trailing appid does not belong to this account
    """
    try:
        key = derive_aes_key(encoding_aes_key)
    except ValueError as e:
        raise MalformedPayload(str(e))

    try:
        ciphertext = base64.b64decode(encrypted, validate=False)
    except (binascii.Error, ValueError):
        raise MalformedPayload("Encrypt field is not valid base64")
    if not ciphertext or len(ciphertext) % AES.block_size != 0:
        raise MalformedPayload("Ciphertext length is not a multiple of the block size")

    cipher = AES.new(key, AES.MODE_CBC, key[:16])
    plain = _pkcs7_unpad(cipher.decrypt(ciphertext))

    content = plain[RANDOM_PREFIX_BYTES:]
    if len(content) < 4:
        raise MalformedPayload("Decrypted payload too short")
    (msg_len,) = struct.unpack(">I", content[:4])
    if msg_len > len(content) - 4:
        raise MalformedPayload("Decrypted length prefix is inconsistent")

    message = content[4:4 + msg_len]
    from_app_id = content[4 + msg_len:].decode("utf-8", errors="replace")
    if not hmac.compare_digest(from_app_id, app_id or ""):
        raise AuthenticationFailure("AppId mismatch in encrypted envelope")

    try:
        return message.decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedPayload("Decrypted payload is not UTF-8")


# ============================================================================
# FULL POST VERIFICATION
# ============================================================================

@dataclass(frozen=True)
class VerifiedEnvelope:
    """Result of a successful POST verification."""

    event: InboundEvent
    encrypted: bool


def process_envelope(
    account: WechatMpAccount,
    body: bytes,
    query: Mapping[str, str],
) -> VerifiedEnvelope:
    """
    Authenticate and decode a webhook POST for one account.

    Plaintext mode checks ``signature``; safe mode (``encrypt_type=aes``) checks
    ``msg_signature`` over the Encrypt field and decrypts it.

    Raises:
        AuthenticationFailure: signature/appid mismatch
        MalformedPayload: body or inner envelope cannot be parsed
    """
    from .normalize import normalize_event, parse_envelope_fields

    timestamp = query.get("timestamp", "")
    nonce = query.get("nonce", "")
    encrypt_type = (query.get("encrypt_type") or "raw").lower()

    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedPayload("Body is not UTF-8")

    if encrypt_type == "aes":
        outer = parse_envelope_fields(text)
        encrypted = outer.get("Encrypt")
        if not encrypted:
            raise MalformedPayload("Missing Encrypt field")
        msg_signature = query.get("msg_signature", "")
        if not verify_message_signature(account.token, msg_signature, timestamp, nonce, encrypted):
            raise AuthenticationFailure("Message signature verification failed")
        inner = decrypt_message(encrypted, account.encoding_aes_key, account.app_id)
        logger.debug(f"[wemp:{account.account_id}] decrypted envelope ({len(inner)} chars)")
        return VerifiedEnvelope(event=normalize_event(parse_envelope_fields(inner)), encrypted=True)

    if not verify_signature(account.token, query.get("signature", ""), timestamp, nonce):
        raise AuthenticationFailure("Signature verification failed")
    return VerifiedEnvelope(event=normalize_event(parse_envelope_fields(text)), encrypted=False)
