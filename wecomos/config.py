"""
Configuration loading and WeCom account resolution.

Configuration is a YAML file (``wecomos.yaml`` by default) with a ``wecom``
channel section plus a few bridge-wide settings::

    wecom:
      corpId: ww0123456789
      agentId: 1000002
      secretFile: /run/secrets/wecom
      webhookToken: my-token
      encodingAESKey: abcdefghijklmnopqrstuvwxyz0123456789ABCDEFG
      dmPolicy: pairing
      accounts:
        sales:
          agentId: 1000003
          secret: s3cret
    commands:
      useAccessGroups: true
    text:
      tableMode: code

Keys are accepted in snake_case or camelCase.

Path priority (highest first):
1. Environment variable WECOM_CONFIG
2. ``config_path`` argument
3. ``./wecomos.yaml``
4. Built-in defaults

Accounts are never cached: ``resolve_account`` derives a fresh view each
call, per-account values layered over the channel-wide defaults.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_ID = "default"
DEFAULT_CONFIG_FILE = "wecomos.yaml"
CONFIG_ENV_VAR = "WECOM_CONFIG"
SECRET_ENV_VAR = "WECOM_SECRET"

DEFAULT_TEXT_CHUNK_LIMIT = 2048
DEFAULT_MEDIA_MAX_MB = 20
DEFAULT_MAX_BODY_BYTES = 1024 * 1024

TableMode = Literal["off", "bullets", "code"]
ChunkMode = Literal["length", "newline"]


class AccountNotConfiguredError(Exception):
    """Raised when a provider is started for an account without credentials."""

    def __init__(self, account_id: str):
        super().__init__(
            f'WeCom account "{account_id}" is not configured '
            "(corp_id, agent_id and secret are required)"
        )
        self.account_id = account_id


class DmPolicy(str, Enum):
    """Direct message access policy."""

    DISABLED = "disabled"
    ALLOWLIST = "allowlist"
    PAIRING = "pairing"
    OPEN = "open"


class GroupPolicy(str, Enum):
    """Group message access policy."""

    DISABLED = "disabled"
    ALLOWLIST = "allowlist"
    OPEN = "open"


class SecretSource(str, Enum):
    CONFIG = "config"
    CONFIG_FILE = "configFile"
    ENV = "env"
    NONE = "none"


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class WeComAccountConfig(_ConfigModel):
    """Per-account settings; the same fields serve as channel-wide defaults."""

    name: Optional[str] = None
    enabled: Optional[bool] = None
    corp_id: Optional[Union[str, int]] = None
    agent_id: Optional[Union[str, int]] = None
    secret: Optional[str] = None
    secret_file: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_path: Optional[str] = None
    webhook_token: Optional[str] = None
    encoding_aes_key: Optional[str] = Field(None, alias="encodingAESKey")
    dm_policy: Optional[DmPolicy] = None
    allow_from: Optional[List[Union[str, int]]] = None
    group_policy: Optional[GroupPolicy] = None
    group_allow_from: Optional[List[Union[str, int]]] = None
    media_max_mb: Optional[float] = None
    text_chunk_limit: Optional[int] = None
    block_streaming: Optional[bool] = None


class WeComConfig(WeComAccountConfig):
    """The ``wecom`` channel section."""

    accounts: Dict[str, WeComAccountConfig] = Field(default_factory=dict)
    default_account: Optional[str] = None


class CommandsConfig(_ConfigModel):
    use_access_groups: bool = True


class TextConfig(_ConfigModel):
    table_mode: TableMode = "code"
    chunk_mode: ChunkMode = "length"


class ServerConfig(_ConfigModel):
    host: str = "127.0.0.1"
    port: int = 8080
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES


class BridgeConfig(_ConfigModel):
    """Root configuration document."""

    wecom: WeComConfig = Field(default_factory=WeComConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    text: TextConfig = Field(default_factory=TextConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    default_agent: str = "main"


@dataclass
class ResolvedWeComAccount:
    """One WeCom application binding, derived from layered configuration.

    ``configured`` is true iff corp id, agent id and secret are all non-empty.
    """
    account_id: str
    enabled: bool
    corp_id: str
    agent_id: str
    secret: str
    secret_source: SecretSource
    configured: bool
    config: WeComAccountConfig
    name: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_path: Optional[str] = None
    webhook_token: Optional[str] = None
    encoding_aes_key: Optional[str] = None
    dm_policy: DmPolicy = DmPolicy.PAIRING
    allow_from: List[str] = field(default_factory=list)
    group_policy: Optional[GroupPolicy] = None
    group_allow_from: List[str] = field(default_factory=list)
    media_max_mb: float = DEFAULT_MEDIA_MAX_MB
    text_chunk_limit: int = DEFAULT_TEXT_CHUNK_LIMIT
    block_streaming: Optional[bool] = None

    @property
    def default_webhook_path(self) -> str:
        return self.webhook_path or f"/webhook/wecom/{self.account_id}"


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _read_secret_file(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    try:
        content = Path(path).expanduser().read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.warning(f"Cannot read WeCom secret file {path}: {e}")
        return None
    return content or None


def list_account_ids(cfg: WeComConfig) -> List[str]:
    """Configured account ids sorted, or ``["default"]`` if none."""
    ids = [account_id for account_id in cfg.accounts if account_id]
    if not ids:
        return [DEFAULT_ACCOUNT_ID]
    return sorted(ids)


def resolve_default_account_id(cfg: WeComConfig) -> str:
    ids = list_account_ids(cfg)
    preferred = (cfg.default_account or "").strip()
    if preferred and preferred in ids:
        return preferred
    if DEFAULT_ACCOUNT_ID in ids:
        return DEFAULT_ACCOUNT_ID
    return ids[0] if ids else DEFAULT_ACCOUNT_ID


def _account_section(cfg: WeComConfig, account_id: str) -> Optional[WeComAccountConfig]:
    if account_id == DEFAULT_ACCOUNT_ID:
        # Root fields count as the default account only once something is set
        if cfg.corp_id or cfg.agent_id or cfg.secret:
            return cfg
        return cfg.accounts.get(account_id)
    return cfg.accounts.get(account_id)


def _resolve_secret(
    account_id: str,
    root: WeComConfig,
    account: Optional[WeComAccountConfig],
) -> tuple[str, SecretSource]:
    if account is not None:
        if _clean(account.secret):
            return _clean(account.secret), SecretSource.CONFIG
        file_secret = _read_secret_file(account.secret_file)
        if file_secret:
            return file_secret, SecretSource.CONFIG_FILE

    if account_id == DEFAULT_ACCOUNT_ID:
        if _clean(root.secret):
            return _clean(root.secret), SecretSource.CONFIG
        file_secret = _read_secret_file(root.secret_file)
        if file_secret:
            return file_secret, SecretSource.CONFIG_FILE
        env_secret = os.getenv(SECRET_ENV_VAR, "").strip()
        if env_secret:
            return env_secret, SecretSource.ENV

    return "", SecretSource.NONE


def _merge(root: WeComConfig, account: Optional[WeComAccountConfig]) -> WeComAccountConfig:
    merged: Dict[str, Any] = {}
    for name in WeComAccountConfig.model_fields:
        value = getattr(account, name) if account is not None else None
        merged[name] = value if value is not None else getattr(root, name)
    return WeComAccountConfig.model_validate(merged)


def _string_list(values: Optional[List[Union[str, int]]]) -> List[str]:
    return [str(v).strip() for v in values or [] if str(v).strip()]


def resolve_account(cfg: WeComConfig, account_id: Optional[str] = None) -> ResolvedWeComAccount:
    """
    Resolve one account from the channel configuration.

    Args:
        cfg: The ``wecom`` configuration section
        account_id: Account to resolve (default account if empty)

    Returns:
        ResolvedWeComAccount (check ``configured`` before using credentials)
    """
    account_id = (account_id or "").strip() or resolve_default_account_id(cfg)
    section = _account_section(cfg, account_id)
    secret, source = _resolve_secret(account_id, cfg, section)
    merged = _merge(cfg, section)

    corp_id = _clean(merged.corp_id)
    agent_id = _clean(merged.agent_id)

    return ResolvedWeComAccount(
        account_id=account_id,
        name=_clean(merged.name) or None,
        enabled=merged.enabled is not False,
        corp_id=corp_id,
        agent_id=agent_id,
        secret=secret,
        secret_source=source,
        configured=bool(corp_id and agent_id and secret),
        config=merged,
        webhook_url=_clean(merged.webhook_url) or None,
        webhook_path=_clean(merged.webhook_path) or None,
        webhook_token=_clean(merged.webhook_token) or None,
        encoding_aes_key=_clean(merged.encoding_aes_key) or None,
        dm_policy=merged.dm_policy or DmPolicy.PAIRING,
        allow_from=_string_list(merged.allow_from),
        group_policy=merged.group_policy,
        group_allow_from=_string_list(merged.group_allow_from),
        media_max_mb=merged.media_max_mb if merged.media_max_mb is not None else DEFAULT_MEDIA_MAX_MB,
        text_chunk_limit=merged.text_chunk_limit or DEFAULT_TEXT_CHUNK_LIMIT,
        block_streaming=merged.block_streaming,
    )


def list_enabled_accounts(cfg: WeComConfig) -> List[ResolvedWeComAccount]:
    accounts = [resolve_account(cfg, account_id) for account_id in list_account_ids(cfg)]
    return [account for account in accounts if account.enabled]


def _config_path(config_path: Optional[Path]) -> Optional[Path]:
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    if config_path is not None:
        return Path(config_path)
    default_path = Path.cwd() / DEFAULT_CONFIG_FILE
    if default_path.exists():
        return default_path
    return None


def load_config(config_path: Optional[Path] = None) -> BridgeConfig:
    """
    Load the bridge configuration.

    Args:
        config_path: YAML file (WECOM_CONFIG takes precedence)

    Returns:
        BridgeConfig (defaults if no file is found)

    Raises:
        FileNotFoundError: If an explicit path does not exist
        yaml.YAMLError: If the file is not valid YAML
        pydantic.ValidationError: If a value has the wrong type
    """
    path = _config_path(config_path)
    if path is None:
        logger.debug("No config file found, using defaults")
        return BridgeConfig()

    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    # Empty file
    if data is None:
        data = {}
    return BridgeConfig.model_validate(data)


class ConfigProvider:
    """Supplies the current configuration.

    With a file path, the file is re-read on every call so edits take effect
    without a restart. A broken edit keeps the last good configuration.
    """

    def __init__(self, config_path: Optional[Path] = None, config: Optional[BridgeConfig] = None):
        self.config_path = config_path
        self._static = config
        self._last_good: Optional[BridgeConfig] = None

    @classmethod
    def static(cls, config: BridgeConfig) -> "ConfigProvider":
        return cls(config=config)

    def get(self) -> BridgeConfig:
        if self._static is not None:
            return self._static
        try:
            self._last_good = load_config(self.config_path)
        except (OSError, yaml.YAMLError, ValueError) as e:
            if self._last_good is None:
                raise
            logger.error(f"Config reload failed, keeping previous config: {e}")
        return self._last_good

    def wecom(self) -> WeComConfig:
        return self.get().wecom

    def account(self, account_id: Optional[str] = None) -> ResolvedWeComAccount:
        return resolve_account(self.get().wecom, account_id)
