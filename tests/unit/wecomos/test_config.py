"""Tests for configuration loading and account resolution."""

from pathlib import Path

import pytest

from wecomos.config import (
    BridgeConfig,
    ConfigProvider,
    DmPolicy,
    GroupPolicy,
    SecretSource,
    WeComConfig,
    list_account_ids,
    list_enabled_accounts,
    load_config,
    resolve_account,
    resolve_default_account_id,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("WECOM_SECRET", raising=False)
    monkeypatch.delenv("WECOM_CONFIG", raising=False)


def _wecom(data: dict) -> WeComConfig:
    return WeComConfig.model_validate(data)


class TestAccountIds:
    def test_default_when_no_accounts(self):
        assert list_account_ids(_wecom({})) == ["default"]

    def test_sorted(self):
        cfg = _wecom({"accounts": {"sales": {}, "ops": {}}})
        assert list_account_ids(cfg) == ["ops", "sales"]

    def test_default_account_preference(self):
        cfg = _wecom({"accounts": {"sales": {}, "ops": {}}, "defaultAccount": "sales"})
        assert resolve_default_account_id(cfg) == "sales"

    def test_unknown_preference_falls_back_to_first(self):
        cfg = _wecom({"accounts": {"sales": {}, "ops": {}}, "defaultAccount": "nope"})
        assert resolve_default_account_id(cfg) == "ops"

    def test_literal_default_wins_over_first(self):
        cfg = _wecom({"accounts": {"alpha": {}, "default": {}}})
        assert resolve_default_account_id(cfg) == "default"


class TestResolveAccount:
    def test_root_fields_form_default_account(self):
        account = resolve_account(_wecom({
            "corpId": "ww1",
            "agentId": 1000002,
            "secret": "s",
            "webhookToken": "tok",
            "encodingAESKey": "k" * 43,
        }))

        assert account.account_id == "default"
        assert account.configured
        assert account.corp_id == "ww1"
        assert account.agent_id == "1000002"
        assert account.secret_source == SecretSource.CONFIG
        assert account.webhook_token == "tok"
        assert account.encoding_aes_key == "k" * 43
        assert account.dm_policy == DmPolicy.PAIRING
        assert account.group_policy is None
        assert account.text_chunk_limit == 2048
        assert account.default_webhook_path == "/webhook/wecom/default"

    def test_snake_case_keys(self):
        account = resolve_account(_wecom({
            "corp_id": "ww1",
            "agent_id": "7",
            "secret": "s",
            "dm_policy": "open",
            "encoding_aes_key": "key",
        }))
        assert account.configured
        assert account.dm_policy == DmPolicy.OPEN
        assert account.encoding_aes_key == "key"

    def test_account_overrides_root(self):
        cfg = _wecom({
            "corpId": "ww1",
            "webhookToken": "root-token",
            "dmPolicy": "allowlist",
            "allowFrom": ["bob"],
            "accounts": {
                "sales": {"agentId": 1000003, "secret": "s2", "dmPolicy": "open", "groupPolicy": "disabled"},
            },
        })

        account = resolve_account(cfg, "sales")

        assert account.configured
        assert account.corp_id == "ww1"
        assert account.agent_id == "1000003"
        assert account.webhook_token == "root-token"
        assert account.dm_policy == DmPolicy.OPEN
        assert account.group_policy == GroupPolicy.DISABLED
        assert account.allow_from == ["bob"]

    def test_unconfigured_without_secret(self):
        account = resolve_account(_wecom({"corpId": "ww1", "agentId": 1}))
        assert not account.configured
        assert account.secret_source == SecretSource.NONE

    def test_disabled_account(self):
        cfg = _wecom({"accounts": {"a": {"enabled": False}, "b": {}}})
        assert [a.account_id for a in list_enabled_accounts(cfg)] == ["b"]

    def test_allow_from_normalized_to_strings(self):
        account = resolve_account(_wecom({"allowFrom": [" bob ", 42, ""]}))
        assert account.allow_from == ["bob", "42"]


class TestSecretResolution:
    def test_secret_file(self, tmp_path: Path):
        secret_file = tmp_path / "secret"
        secret_file.write_text("from-file\n")

        account = resolve_account(_wecom({"corpId": "ww1", "agentId": 1, "secretFile": str(secret_file)}))

        assert account.secret == "from-file"
        assert account.secret_source == SecretSource.CONFIG_FILE

    def test_inline_secret_beats_file(self, tmp_path: Path):
        secret_file = tmp_path / "secret"
        secret_file.write_text("from-file")

        account = resolve_account(_wecom({"secret": "inline", "secretFile": str(secret_file)}))

        assert account.secret == "inline"
        assert account.secret_source == SecretSource.CONFIG

    def test_env_for_default_account(self, monkeypatch):
        monkeypatch.setenv("WECOM_SECRET", " env-secret ")

        account = resolve_account(_wecom({"corpId": "ww1", "agentId": 1}))

        assert account.secret == "env-secret"
        assert account.secret_source == SecretSource.ENV
        assert account.configured

    def test_env_ignored_for_named_account(self, monkeypatch):
        monkeypatch.setenv("WECOM_SECRET", "env-secret")

        account = resolve_account(_wecom({"accounts": {"sales": {"corpId": "ww1", "agentId": 1}}}), "sales")

        assert account.secret == ""
        assert account.secret_source == SecretSource.NONE

    def test_missing_secret_file(self, tmp_path: Path):
        account = resolve_account(_wecom({"secretFile": str(tmp_path / "missing")}))
        assert account.secret_source == SecretSource.NONE


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        cfg = load_config()
        assert cfg == BridgeConfig()
        assert cfg.server.port == 8080
        assert cfg.text.table_mode == "code"

    def test_explicit_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_yaml_file(self, tmp_path: Path):
        path = tmp_path / "wecomos.yaml"
        path.write_text(
            "wecom:\n"
            "  corpId: ww1\n"
            "  agentId: 1000002\n"
            "  secret: s\n"
            "commands:\n"
            "  useAccessGroups: false\n"
            "text:\n"
            "  chunkMode: newline\n"
        )

        cfg = load_config(path)

        assert cfg.wecom.corp_id == "ww1"
        assert cfg.commands.use_access_groups is False
        assert cfg.text.chunk_mode == "newline"

    def test_env_path_takes_precedence(self, tmp_path: Path, monkeypatch):
        env_file = tmp_path / "env.yaml"
        env_file.write_text("defaultAgent: from-env\n")
        arg_file = tmp_path / "arg.yaml"
        arg_file.write_text("defaultAgent: from-arg\n")
        monkeypatch.setenv("WECOM_CONFIG", str(env_file))

        assert load_config(arg_file).default_agent == "from-env"

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == BridgeConfig()


class TestConfigProvider:
    def test_reloads_file_on_each_call(self, tmp_path: Path):
        path = tmp_path / "wecomos.yaml"
        path.write_text("defaultAgent: first\n")
        provider = ConfigProvider(path)

        assert provider.get().default_agent == "first"
        path.write_text("defaultAgent: second\n")
        assert provider.get().default_agent == "second"

    def test_keeps_last_good_config(self, tmp_path: Path):
        path = tmp_path / "wecomos.yaml"
        path.write_text("defaultAgent: good\n")
        provider = ConfigProvider(path)
        provider.get()

        path.write_text("defaultAgent: [unclosed\n")

        assert provider.get().default_agent == "good"

    def test_first_load_error_propagates(self, tmp_path: Path):
        provider = ConfigProvider(tmp_path / "missing.yaml")
        with pytest.raises(FileNotFoundError):
            provider.get()

    def test_static(self):
        cfg = BridgeConfig.model_validate({"wecom": {"corpId": "ww1", "agentId": 1, "secret": "s"}})
        provider = ConfigProvider.static(cfg)
        assert provider.get() is cfg
        assert provider.account().configured
