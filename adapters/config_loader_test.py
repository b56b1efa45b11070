"""Tests for config loading, interpolation, deep merge, and redaction.

Validates:
- Layered loading: defaults < YAML file < overrides
- {env:VAR} interpolation with allowlist
- {file:path} interpolation with safety checks
- Deep merge semantics
- Secret redaction in configs, headers, and strings
"""

import os
import sys

import pytest

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config_loader import (
    REDACTED,
    deep_merge,
    interpolate_config,
    interpolate_value,
    load_config,
    redact_config,
    redact_headers,
    redact_string,
    resolve_config_path,
)


# ── Loading ───────────────────────────────────────────────────────────


class TestLoadConfig:
    @pytest.fixture(autouse=True)
    def _isolate(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("CHATSTREAM_CONFIG", raising=False)

    def test_defaults_only(self):
        config = load_config()
        assert config["model"] == "gpt-4o-mini"
        assert config["provider"]["type"] == "openai"
        assert config["retry"]["max_retries"] == 3

    def test_yaml_file_layered_over_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
        path = tmp_path / "custom.yaml"
        path.write_text(
            "provider:\n"
            "  api_key: '{env:OPENAI_API_KEY}'\n"
            "model: gpt-4o\n"
            "retry:\n"
            "  max_retries: 0\n"
        )
        config = load_config(str(path))
        assert config["provider"]["api_key"] == "sk-from-env"
        assert config["provider"]["type"] == "openai"
        assert config["model"] == "gpt-4o"
        assert config["retry"]["max_retries"] == 0
        assert config["retry"]["base_delay_ms"] == 1000

    def test_default_file_in_cwd(self, tmp_path):
        (tmp_path / ".chatstream.yaml").write_text("model: local-model\n")
        assert resolve_config_path() == ".chatstream.yaml"
        assert load_config()["model"] == "local-model"

    def test_env_var_selects_file(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        path.write_text("model: from-env-file\n")
        monkeypatch.setenv("CHATSTREAM_CONFIG", str(path))
        assert load_config()["model"] == "from-env-file"

    def test_overrides_win(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("model: file-model\n")
        config = load_config(str(path), overrides={"model": "cli-model"})
        assert config["model"] == "cli-model"

    def test_missing_file(self):
        with pytest.raises(ValueError, match="Config not found"):
            load_config("does-not-exist.yaml")

    def test_directory_path(self, tmp_path):
        (tmp_path / "conf.d").mkdir()
        with pytest.raises(ValueError, match="Cannot read config"):
            load_config(str(tmp_path / "conf.d"))

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("provider: [unclosed\n")
        with pytest.raises(ValueError, match="Malformed config"):
            load_config(str(path))

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="must be a mapping"):
            load_config(str(path))

    def test_file_secret_relative_to_config(self, tmp_path):
        secrets = tmp_path / ".chatstream.d"
        secrets.mkdir()
        key_file = secrets / "openai.key"
        key_file.write_text("sk-from-file\n")
        os.chmod(str(key_file), 0o600)
        path = tmp_path / "c.yaml"
        path.write_text("provider:\n  api_key: '{file:.chatstream.d/openai.key}'\n")

        assert load_config(str(path))["provider"]["api_key"] == "sk-from-file"

    def test_no_interpolation(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("provider:\n  api_key: '{env:OPENAI_API_KEY}'\n")
        config = load_config(str(path), interpolate=False)
        assert config["provider"]["api_key"] == "{env:OPENAI_API_KEY}"

    def test_extra_allowlist(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MY_GATEWAY_KEY", "gw-key")
        path = tmp_path / "c.yaml"
        path.write_text(
            "env_allowlist: ['^MY_GATEWAY_']\n"
            "provider:\n  api_key: '{env:MY_GATEWAY_KEY}'\n"
        )
        assert load_config(str(path))["provider"]["api_key"] == "gw-key"


# ── Env interpolation ────────────────────────────────────────────────


class TestEnvInterpolation:
    def test_resolve_allowed_env_var(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test-key")
        assert interpolate_value("{env:OPENAI_API_KEY}") == "sk-test-key"

    def test_resolve_prefixed_var(self, monkeypatch):
        monkeypatch.setenv("CHATSTREAM_MODEL", "gpt-4o")
        assert interpolate_value("{env:CHATSTREAM_MODEL}") == "gpt-4o"

    def test_reject_disallowed_env_var(self):
        with pytest.raises(ValueError, match="not in the allowlist"):
            interpolate_value("{env:HOME}")

    def test_missing_env_var_raises(self, monkeypatch):
        monkeypatch.delenv("CHATSTREAM_NONEXISTENT", raising=False)
        with pytest.raises(ValueError, match="is not set"):
            interpolate_value("{env:CHATSTREAM_NONEXISTENT}")

    def test_passthrough_no_interpolation(self):
        assert interpolate_value("plain string") == "plain string"

    def test_mixed_text_and_interpolation(self, monkeypatch):
        monkeypatch.setenv("OLLAMA_HOST", "localhost")
        result = interpolate_value("http://{env:OLLAMA_HOST}:11434")
        assert result == "http://localhost:11434"


# ── File interpolation ────────────────────────────────────────────────


class TestFileInterpolation:
    def test_resolve_file_in_secrets_dir(self, tmp_path):
        secrets = tmp_path / ".chatstream.d"
        secrets.mkdir()
        secret_file = secrets / "api-key.txt"
        secret_file.write_text("sk-from-file\n")
        os.chmod(str(secret_file), 0o600)

        result = interpolate_value(f"{{file:{secret_file}}}", project_root=str(tmp_path))
        assert result == "sk-from-file"

    def test_reject_file_outside_allowed_dirs(self, tmp_path):
        bad_file = tmp_path / "outside" / "secret.txt"
        bad_file.parent.mkdir()
        bad_file.write_text("secret")
        os.chmod(str(bad_file), 0o600)

        with pytest.raises(ValueError, match="not in allowed directories"):
            interpolate_value(f"{{file:{bad_file}}}", project_root=str(tmp_path))

    def test_reject_symlink(self, tmp_path):
        secrets = tmp_path / ".chatstream.d"
        secrets.mkdir()
        real_file = secrets / "real.txt"
        real_file.write_text("secret")
        link = secrets / "link.txt"
        link.symlink_to(real_file)

        with pytest.raises(ValueError, match="symlink"):
            interpolate_value(f"{{file:{link}}}", project_root=str(tmp_path))

    def test_reject_unsafe_permissions(self, tmp_path):
        secrets = tmp_path / ".chatstream.d"
        secrets.mkdir()
        bad_perm = secrets / "world-readable.txt"
        bad_perm.write_text("secret")
        os.chmod(str(bad_perm), 0o644)

        with pytest.raises(ValueError, match="unsafe permissions"):
            interpolate_value(f"{{file:{bad_perm}}}", project_root=str(tmp_path))

    def test_reject_missing_file(self, tmp_path):
        secrets = tmp_path / ".chatstream.d"
        secrets.mkdir()

        with pytest.raises(ValueError, match="not found"):
            interpolate_value(
                f"{{file:{secrets / 'missing.txt'}}}", project_root=str(tmp_path)
            )


# ── Config interpolation ─────────────────────────────────────────────


class TestInterpolateConfig:
    def test_recursive_interpolation(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        config = {"provider": {"api_key": "{env:OPENAI_API_KEY}", "type": "openai"}}
        result = interpolate_config(config)
        assert result["provider"]["api_key"] == "sk-test"
        assert result["provider"]["type"] == "openai"

    def test_list_interpolation(self, monkeypatch):
        monkeypatch.setenv("CHATSTREAM_URL1", "http://a")
        monkeypatch.setenv("CHATSTREAM_URL2", "http://b")
        config = {"urls": ["{env:CHATSTREAM_URL1}", "{env:CHATSTREAM_URL2}", "plain"]}
        assert interpolate_config(config)["urls"] == ["http://a", "http://b", "plain"]

    def test_non_string_values_preserved(self):
        config = {"max_retries": 3, "debug": True, "codes": [429, 500]}
        assert interpolate_config(config) == config


# ── Deep merge ────────────────────────────────────────────────────────


class TestDeepMerge:
    def test_simple_overlay(self):
        assert deep_merge({"a": 1, "b": 2}, {"b": 3, "c": 4}) == {"a": 1, "b": 3, "c": 4}

    def test_nested_merge(self):
        base = {"x": {"a": 1, "b": 2}, "y": 10}
        overlay = {"x": {"b": 3, "c": 4}}
        assert deep_merge(base, overlay) == {"x": {"a": 1, "b": 3, "c": 4}, "y": 10}

    def test_overlay_replaces_non_dict(self):
        assert deep_merge({"x": {"nested": True}}, {"x": "replaced"})["x"] == "replaced"

    def test_no_mutation(self):
        base = {"a": {"b": 1}}
        overlay = {"a": {"c": 2}}
        deep_merge(base, overlay)
        assert "c" not in base["a"]
        assert "b" not in overlay["a"]


# ── Redaction ─────────────────────────────────────────────────────────


class TestRedaction:
    def test_redacts_interpolation_tokens(self):
        result = redact_config({"api_key": "{env:OPENAI_API_KEY}", "model": "m"})
        assert REDACTED in result["api_key"]
        assert "OPENAI_API_KEY" in result["api_key"]
        assert result["model"] == "m"

    def test_redacts_nested_secrets(self):
        config = {"provider": {"api_key": "sk-secret", "base_url": "https://api.openai.com"}}
        result = redact_config(config)
        assert result["provider"]["api_key"] == REDACTED
        assert result["provider"]["base_url"] == "https://api.openai.com"

    def test_redacts_authorization_header(self):
        result = redact_headers({
            "Authorization": "Bearer sk-secret",
            "Content-Type": "application/json",
        })
        assert result["Authorization"] == REDACTED
        assert result["Content-Type"] == "application/json"

    def test_redacts_bearer_token_in_text(self):
        result = redact_string("Authorization: Bearer sk-test123 was sent")
        assert "sk-test123" not in result
        assert REDACTED in result

    def test_redacts_known_env_values(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-real-secret")
        result = redact_string("Error with sk-real-secret in message")
        assert "sk-real-secret" not in result

    def test_plain_string_unchanged(self):
        assert redact_string("Just a normal error message") == "Just a normal error message"
