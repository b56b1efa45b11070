"""Provider registry and validation for OpenAI-style chat endpoints.

Provides:
- Supported provider type registry (openai, openai_compat, xai, ollama)
- Provider config validation
- Default base URL, endpoint paths and timeouts per provider type
- Auth header and endpoint URL resolution
- Token estimation (best-effort)

Note: this module is metadata only. HTTP transport lives in chatstream.py.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger("chatstream.provider_registry")

# Endpoint names accepted by resolve_url()
ENDPOINTS = ("chat", "models", "completions", "embeddings", "images")


@dataclass(frozen=True)
class ProviderDefaults:
    """Default configuration for a provider type."""

    base_url: str = "https://api.openai.com"
    connect_timeout_ms: int = 5000
    read_timeout_ms: int = 60000
    total_timeout_ms: int = 300000
    chat_path: str = "/v1/chat/completions"
    models_path: str = "/v1/models"
    completions_path: str = "/v1/completions"
    embeddings_path: str = "/v1/embeddings"
    images_path: str = "/v1/images/generations"
    auth_header: str = "Authorization"
    auth_prefix: str = "Bearer"
    requires_api_key: bool = True
    api_key_env: str = "OPENAI_API_KEY"
    extra_headers: Dict[str, str] = field(default_factory=dict)


# Provider type → default configuration
_PROVIDER_DEFAULTS: Dict[str, ProviderDefaults] = {
    "openai": ProviderDefaults(),
    "openai_compat": ProviderDefaults(base_url=""),
    "xai": ProviderDefaults(base_url="https://api.x.ai", api_key_env="XAI_API_KEY"),
    "ollama": ProviderDefaults(
        base_url="http://localhost:11434",
        read_timeout_ms=300000,
        requires_api_key=False,
        api_key_env="OLLAMA_API_KEY",
    ),
}


def get_supported_types() -> List[str]:
    """Return list of supported provider types."""
    return list(_PROVIDER_DEFAULTS.keys())


def is_supported_type(provider_type: str) -> bool:
    """Check if a provider type is supported."""
    return provider_type in _PROVIDER_DEFAULTS


def get_defaults(provider_type: str) -> Optional[ProviderDefaults]:
    """Get default configuration for a provider type.

    Returns None if provider type is not recognized.
    """
    return _PROVIDER_DEFAULTS.get(provider_type)


def validate_provider(provider: Dict[str, Any]) -> List[str]:
    """Validate a provider configuration dict.

    Returns list of error strings (empty = valid).
    """
    errors = []

    ptype = provider.get("type", "openai")
    defaults = get_defaults(ptype)
    if defaults is None:
        errors.append(
            f"Unknown provider type '{ptype}'. "
            f"Supported: {get_supported_types()}"
        )
        defaults = ProviderDefaults()

    if not (provider.get("base_url") or defaults.base_url):
        errors.append("Provider 'base_url' is required")

    if defaults.requires_api_key and not resolve_api_key(provider):
        errors.append(
            f"Provider 'api_key' is required (or set {defaults.api_key_env})"
        )

    return errors


def resolve_auth_headers(provider: Dict[str, Any]) -> Dict[str, str]:
    """Build auth headers for a provider.

    Providers without a key (local Ollama) get no auth header.
    """
    ptype = provider.get("type", "openai")
    api_key = resolve_api_key(provider)
    defaults = get_defaults(ptype) or ProviderDefaults()

    headers: Dict[str, str] = {
        "Content-Type": "application/json",
    }

    if api_key:
        if defaults.auth_prefix:
            headers[defaults.auth_header] = f"{defaults.auth_prefix} {api_key}"
        else:
            headers[defaults.auth_header] = api_key

    headers.update(defaults.extra_headers)
    return headers


def resolve_api_key(provider: Dict[str, Any]) -> str:
    """Configured api_key, else the provider type's key env var ("" if unset)."""
    if provider.get("api_key"):
        return provider["api_key"]
    defaults = get_defaults(provider.get("type", "openai")) or ProviderDefaults()
    return os.environ.get(defaults.api_key_env, "")


def resolve_base_url(provider: Dict[str, Any]) -> str:
    """Configured base URL, else the provider type's default."""
    ptype = provider.get("type", "openai")
    defaults = get_defaults(ptype) or ProviderDefaults()
    return (provider.get("base_url") or defaults.base_url).rstrip("/")


def resolve_url(
    provider: Dict[str, Any], endpoint: str, path_override: Optional[str] = None
) -> str:
    """Resolve the full URL of an endpoint for a provider.

    path_override replaces the default path (the base URL's own path is
    dropped, matching a URL set_path()).
    """
    if endpoint not in ENDPOINTS:
        raise ValueError(f"Unknown endpoint '{endpoint}'. Known: {list(ENDPOINTS)}")

    ptype = provider.get("type", "openai")
    defaults = get_defaults(ptype) or ProviderDefaults()
    path = path_override or getattr(defaults, f"{endpoint}_path")
    if not path.startswith("/"):
        path = "/" + path
    return _origin(resolve_base_url(provider)) + path


def _origin(base_url: str) -> str:
    """scheme://host[:port] of a URL."""
    scheme, sep, rest = base_url.partition("://")
    if not sep:
        return base_url.split("/", 1)[0]
    return f"{scheme}://{rest.split('/', 1)[0]}"


def estimate_tokens(text: str) -> int:
    """Best-effort token estimation.

    Priority: tiktoken cl100k_base > heuristic (len/3.5). The heuristic is
    used when the encoding file cannot be fetched (offline).
    """
    if not text:
        return 0

    import tiktoken

    try:
        enc = tiktoken.get_encoding("cl100k_base")
        return len(enc.encode(text))
    except Exception as e:
        logger.debug("tiktoken encoding unavailable, using heuristic: %s", e)

    # Heuristic: ~3.5 chars per token (conservative for English)
    return int(len(text) / 3.5)


def estimate_message_tokens(messages: List[Dict[str, Any]]) -> int:
    """Estimate token count for a list of messages."""
    text = ""
    for msg in messages:
        content = msg.get("content", "")
        if isinstance(content, str):
            text += content
        elif isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and "text" in block:
                    text += block["text"]
    return estimate_tokens(text)
