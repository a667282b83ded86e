"""wecomos - WeCom (enterprise WeChat) webhook bridge.

Authenticates and decrypts WeCom application callbacks, applies DM/group
access policy, hands authorized text messages to a conversational-agent host
and delivers the host's replies through the WeCom send API.
"""

__version__ = "0.1.0"
