"""WeCom callback cryptography.

This module implements the two primitives WeCom uses to protect webhook
callbacks: the SHA1 request signature and the AES-256-CBC message envelope.

Envelope layout (after base64 decoding and AES decryption):
    random(16B) + msg_len(4B, big-endian) + msg + receive_id

Key material:
    - EncodingAESKey is a 43 character base64 string (32 bytes once padded)
    - The first 16 bytes of the key double as the CBC initialization vector

Failure Model:
    - verify_signature() returns False, never raises
    - decrypt_message() returns None, never raises; the reason is logged

Reference:
    https://developer.work.weixin.qq.com/document/path/101033
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import os
import re
import struct
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)

AES_KEY_SIZE = 32
AES_BLOCK_SIZE = 16
# WeCom pads plaintext to 32-byte blocks before encrypting
WECOM_PAD_BLOCK_SIZE = 32
RANDOM_PREFIX_SIZE = 16
HEADER_SIZE = RANDOM_PREFIX_SIZE + 4

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_TRAILING_RECEIVE_ID_JUNK_RE = re.compile(r"[\x00-\x20\x7f]+$")


@dataclass
class DecryptedMessage:
    """Plaintext recovered from a WeCom envelope.

    Attributes:
        message: Inner message (XML or JSON text, or the echostr plaintext)
        receive_id: Trailing receive id, normally the corp id
    """
    message: str
    receive_id: str


def compute_signature(token: str, timestamp: str, nonce: str, encrypted: str) -> str:
    """Compute the hex SHA1 signature WeCom attaches as msg_signature.

    The four values are sorted lexicographically and concatenated before
    hashing.
    """
    joined = "".join(sorted([token, timestamp, nonce, encrypted]))
    return hashlib.sha1(joined.encode("utf-8")).hexdigest()


def verify_signature(
    token: Optional[str],
    timestamp: Optional[str],
    nonce: Optional[str],
    encrypted: Optional[str],
    signature: Optional[str],
) -> bool:
    """Verify a WeCom msg_signature.

    Args:
        token: Webhook token configured for the account
        timestamp: ``timestamp`` query parameter
        nonce: ``nonce`` query parameter
        encrypted: ``echostr`` (GET) or the ``Encrypt`` field (POST)
        signature: ``msg_signature`` query parameter

    Returns:
        True if the signature matches, False otherwise (including any
        missing argument)
    """
    if not token or not timestamp or not nonce or not encrypted or not signature:
        return False

    try:
        expected = compute_signature(token, timestamp, nonce, encrypted)
    except (TypeError, AttributeError, UnicodeEncodeError) as e:
        logger.debug(f"Signature computation failed: {e}")
        return False

    if len(expected) != len(signature):
        return False

    # Compare bytes so non-ASCII input cannot raise inside compare_digest
    return hmac.compare_digest(
        expected.encode("utf-8"),
        signature.encode("utf-8", errors="replace"),
    )


def decode_aes_key(encoding_aes_key: Optional[str]) -> Optional[bytes]:
    """Decode the 43 character EncodingAESKey into 32 raw key bytes.

    Returns:
        32 key bytes, or None if the key is malformed or the wrong length
    """
    if not encoding_aes_key:
        return None

    raw = re.sub(r"\s", "", encoding_aes_key)
    raw += "=" * (-len(raw) % 4)
    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.debug(f"EncodingAESKey is not valid base64: {e}")
        return None

    if len(key) != AES_KEY_SIZE:
        logger.debug(f"EncodingAESKey decoded to {len(key)} bytes, expected {AES_KEY_SIZE}")
        return None
    return key


def _decode_ciphertext(encrypted: str) -> Optional[bytes]:
    # Form decoders turn "+" into " "; newlines and tabs sneak in from XML
    cleaned = _CONTROL_CHARS_RE.sub("", encrypted.strip().replace(" ", "+"))
    cleaned += "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.debug(f"Ciphertext is not valid base64: {e}")
        return None


def decrypt_message(
    encrypted: Optional[str],
    encoding_aes_key: Optional[str],
    corp_id: Optional[str] = None,
) -> Optional[DecryptedMessage]:
    """Decrypt a WeCom encrypted message.

    Args:
        encrypted: Base64 ciphertext (``echostr`` or ``Encrypt``)
        encoding_aes_key: 43 character EncodingAESKey
        corp_id: If given, the receive id must be ``corp_id`` or ``$corp_id``

    Returns:
        DecryptedMessage, or None on any cryptographic or structural failure

    Padding:
        Strict PKCS#7 validation is not used because real-world ciphertexts
        sometimes fail it. The last byte is trimmed as a pad length when it
        is between 1 and 16; longer vendor padding is removed together with
        trailing control characters of the receive id.
    """
    if not encrypted:
        logger.debug("Decrypt skipped: empty ciphertext")
        return None

    key = decode_aes_key(encoding_aes_key)
    if key is None:
        logger.debug("Decrypt failed: invalid EncodingAESKey")
        return None

    ciphertext = _decode_ciphertext(encrypted)
    if not ciphertext:
        logger.debug("Decrypt failed: ciphertext empty after decoding")
        return None
    if len(ciphertext) % AES_BLOCK_SIZE != 0:
        logger.debug(
            f"Decrypt failed: ciphertext length {len(ciphertext)} "
            f"is not a multiple of {AES_BLOCK_SIZE}"
        )
        return None

    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(key[:AES_BLOCK_SIZE])).decryptor()
        plain = decryptor.update(ciphertext) + decryptor.finalize()
    except ValueError as e:
        logger.debug(f"Decrypt failed: {e}")
        return None

    pad_len = plain[-1]
    if 1 <= pad_len <= AES_BLOCK_SIZE and len(plain) >= pad_len:
        plain = plain[:-pad_len]

    if len(plain) < HEADER_SIZE:
        logger.debug(f"Decrypt failed: plaintext too short ({len(plain)} bytes)")
        return None

    (msg_len,) = struct.unpack(">I", plain[RANDOM_PREFIX_SIZE:HEADER_SIZE])
    available = len(plain) - HEADER_SIZE
    if msg_len > available:
        logger.debug(f"Decrypt failed: msg_len={msg_len} exceeds available={available}")
        return None

    try:
        message = plain[HEADER_SIZE:HEADER_SIZE + msg_len].decode("utf-8")
    except UnicodeDecodeError as e:
        logger.debug(f"Decrypt failed: message is not UTF-8: {e}")
        return None

    receive_id = plain[HEADER_SIZE + msg_len:].decode("utf-8", errors="replace")
    receive_id = _TRAILING_RECEIVE_ID_JUNK_RE.sub("", receive_id)

    if corp_id and receive_id not in (corp_id, f"${corp_id}"):
        logger.warning(
            f"Decrypt rejected: receive id does not match corp id "
            f"(receive_id={receive_id!r})"
        )
        return None

    return DecryptedMessage(message=message, receive_id=receive_id)


def encrypt_message(
    plaintext: str,
    encoding_aes_key: str,
    receive_id: str,
    random_prefix: Optional[bytes] = None,
) -> str:
    """Build a WeCom encrypted envelope.

    Args:
        plaintext: Message to encrypt
        encoding_aes_key: 43 character EncodingAESKey
        receive_id: Receive id to append (normally the corp id)
        random_prefix: Optional 16 byte prefix (random if omitted)

    Returns:
        Base64 ciphertext

    Raises:
        ValueError: If the key or the random prefix is malformed
    """
    key = decode_aes_key(encoding_aes_key)
    if key is None:
        raise ValueError("EncodingAESKey must decode to 32 bytes")

    prefix = random_prefix if random_prefix is not None else os.urandom(RANDOM_PREFIX_SIZE)
    if len(prefix) != RANDOM_PREFIX_SIZE:
        raise ValueError(f"random_prefix must be {RANDOM_PREFIX_SIZE} bytes")

    body = plaintext.encode("utf-8")
    data = prefix + struct.pack(">I", len(body)) + body + receive_id.encode("utf-8")
    pad_len = WECOM_PAD_BLOCK_SIZE - (len(data) % WECOM_PAD_BLOCK_SIZE)
    data += bytes([pad_len]) * pad_len

    encryptor = Cipher(algorithms.AES(key), modes.CBC(key[:AES_BLOCK_SIZE])).encryptor()
    ciphertext = encryptor.update(data) + encryptor.finalize()
    return base64.b64encode(ciphertext).decode("ascii")
