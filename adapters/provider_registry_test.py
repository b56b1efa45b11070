"""Tests for provider registry and validation.

Validates:
- Supported provider type registry
- Provider config validation
- Auth header and URL resolution per provider type
- Token estimation
"""

import os
import sys

import pytest

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import provider_registry
from provider_registry import (
    estimate_message_tokens,
    estimate_tokens,
    get_defaults,
    get_supported_types,
    is_supported_type,
    resolve_api_key,
    resolve_auth_headers,
    resolve_url,
    validate_provider,
)


@pytest.fixture(autouse=True)
def _clean_keys(monkeypatch):
    for var in ("OPENAI_API_KEY", "XAI_API_KEY", "OLLAMA_API_KEY"):
        monkeypatch.delenv(var, raising=False)


# ── Registry ──────────────────────────────────────────────────────────


class TestSupportedTypes:
    def test_openai_supported(self):
        assert is_supported_type("openai")

    def test_xai_supported(self):
        assert is_supported_type("xai")

    def test_ollama_supported(self):
        assert is_supported_type("ollama")

    def test_unknown_not_supported(self):
        assert not is_supported_type("unknown")

    def test_get_supported_types_returns_list(self):
        types = get_supported_types()
        assert isinstance(types, list)
        assert "openai" in types
        assert "openai_compat" in types


class TestGetDefaults:
    def test_openai_defaults(self):
        defaults = get_defaults("openai")
        assert defaults.base_url == "https://api.openai.com"
        assert defaults.chat_path == "/v1/chat/completions"
        assert defaults.models_path == "/v1/models"
        assert defaults.auth_prefix == "Bearer"

    def test_ollama_needs_no_key(self):
        defaults = get_defaults("ollama")
        assert defaults.base_url == "http://localhost:11434"
        assert defaults.requires_api_key is False

    def test_unknown_returns_none(self):
        assert get_defaults("unknown") is None


# ── Validation ────────────────────────────────────────────────────────


class TestValidation:
    def test_valid_provider(self):
        assert validate_provider({"type": "openai", "api_key": "sk-test"}) == []

    def test_key_from_env(self, monkeypatch):
        monkeypatch.setenv("XAI_API_KEY", "xai-test")
        assert validate_provider({"type": "xai"}) == []

    def test_missing_api_key(self):
        errors = validate_provider({"type": "openai"})
        assert any("api_key" in e and "OPENAI_API_KEY" in e for e in errors)

    def test_ollama_without_key(self):
        assert validate_provider({"type": "ollama"}) == []

    def test_compat_requires_base_url(self):
        errors = validate_provider({"type": "openai_compat", "api_key": "k"})
        assert any("base_url" in e for e in errors)

    def test_unknown_type(self):
        errors = validate_provider({"type": "google", "api_key": "k"})
        assert any("Unknown provider type" in e for e in errors)


# ── Auth headers ──────────────────────────────────────────────────────


class TestAuthHeaders:
    def test_bearer_auth(self):
        headers = resolve_auth_headers({"type": "openai", "api_key": "sk-test123"})
        assert headers["Authorization"] == "Bearer sk-test123"
        assert headers["Content-Type"] == "application/json"

    def test_no_key_no_auth_header(self):
        headers = resolve_auth_headers({"type": "ollama", "api_key": ""})
        assert "Authorization" not in headers

    def test_env_key_used(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        assert resolve_api_key({"type": "openai"}) == "sk-env"
        assert resolve_auth_headers({})["Authorization"] == "Bearer sk-env"


# ── URLs ──────────────────────────────────────────────────────────────


class TestResolveUrl:
    def test_default_chat_url(self):
        assert resolve_url({"type": "openai"}, "chat") == "https://api.openai.com/v1/chat/completions"

    def test_custom_base_url_path_replaced(self):
        url = resolve_url({"base_url": "https://api.openai.com/v1/models"}, "models")
        assert url == "https://api.openai.com/v1/models"

    def test_local_base_url(self):
        url = resolve_url({"type": "ollama", "base_url": "http://localhost:11434/"}, "models")
        assert url == "http://localhost:11434/v1/models"

    def test_path_override(self):
        url = resolve_url({"type": "openai"}, "chat", "custom/chat")
        assert url == "https://api.openai.com/custom/chat"

    def test_unknown_endpoint(self):
        with pytest.raises(ValueError, match="Unknown endpoint"):
            resolve_url({}, "audio")


# ── Token estimation ──────────────────────────────────────────────────


class TestTokenEstimation:
    def test_empty_string(self):
        assert estimate_tokens("") == 0

    def test_short_text(self):
        assert estimate_tokens("Hello world") > 0

    def test_heuristic_fallback(self, monkeypatch):
        """Without a loadable encoding, heuristic gives a reasonable estimate."""
        import tiktoken

        def unavailable(name):
            raise OSError("offline")

        monkeypatch.setattr(tiktoken, "get_encoding", unavailable)
        result = provider_registry.estimate_tokens("a" * 350)
        assert result == 100

    def test_message_tokens(self):
        messages = [
            {"role": "user", "content": "Hello, how are you?"},
            {"role": "assistant", "content": "I'm doing well, thanks!"},
        ]
        assert estimate_message_tokens(messages) > 0

    def test_empty_messages(self):
        assert estimate_message_tokens([]) == 0
