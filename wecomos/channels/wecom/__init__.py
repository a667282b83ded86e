"""WeCom Channel Module.

This module provides WeCom integration through application callbacks
(webhooks) and the WeCom server API.

Exports:
    - WeComClient: Async client for the WeCom server API
    - WeComApiError: Vendor or transport failure
    - AccessTokenCache: Access token memoization
    - WebhookTargetRegistry: Webhook path -> account bindings
    - decrypt_message / verify_signature: Callback cryptography
    - WeComMessage: Canonical inbound message

Usage:
    from wecomos.channels.wecom import decrypt_message, verify_signature

    if verify_signature(token, timestamp, nonce, encrypted, signature):
        result = decrypt_message(encrypted, encoding_aes_key, corp_id)
"""

from wecomos.channels.wecom.client import WeComApiError, WeComClient
from wecomos.channels.wecom.crypto import (
    decrypt_message,
    encrypt_message,
    verify_signature,
)
from wecomos.channels.wecom.payload import WeComMessage
from wecomos.channels.wecom.targets import WebhookTargetRegistry
from wecomos.channels.wecom.token_cache import AccessTokenCache

__all__ = [
    "WeComClient",
    "WeComApiError",
    "AccessTokenCache",
    "WebhookTargetRegistry",
    "decrypt_message",
    "encrypt_message",
    "verify_signature",
    "WeComMessage",
]
