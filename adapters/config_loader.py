"""Config loading, interpolation, deep merge, and redaction.

Provides:
- YAML config file loading layered over built-in defaults
- {env:VAR} secret interpolation with allowlist enforcement
- {file:path} secret file reading with safety checks
- Deep merge for layered config
- Redaction for safe logging (never leak secrets)

Config shape (.chatstream.yaml):

    provider:
      type: openai
      base_url: https://api.openai.com
      api_key: "{env:OPENAI_API_KEY}"   # default: the type's api_key_env
    model: gpt-4o-mini
    retry:
      max_retries: 3
"""

from __future__ import annotations

import copy
import logging
import os
import re
import stat
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger("chatstream.config_loader")

# Redaction sentinel
REDACTED = "***REDACTED***"

DEFAULT_CONFIG_FILE = ".chatstream.yaml"
SECRETS_DIR = ".chatstream.d"

DEFAULT_CONFIG: Dict[str, Any] = {
    "provider": {
        "type": "openai",
    },
    "model": "gpt-4o-mini",
    "retry": {
        "max_retries": 3,
        "base_delay_ms": 1000,
        "max_delay_ms": 30000,
        "jitter_percent": 25,
        "retryable_status_codes": [429, 500, 502, 503, 504],
    },
}

# Core allowlist for env var interpolation
_CORE_ENV_PATTERNS = [
    re.compile(r"^CHATSTREAM_"),
    re.compile(r"^OPENAI_API_KEY$"),
    re.compile(r"^XAI_API_KEY$"),
    re.compile(r"^OLLAMA_"),
]

# Regex for interpolation tokens: {env:VAR}, {file:/path}
_INTERP_RE = re.compile(r"\{(env|file):([^}]+)\}")

# Patterns that indicate sensitive keys (for redaction)
_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer)",
    re.IGNORECASE,
)


# ── Env allowlist ─────────────────────────────────────────────────────


def _check_env_allowed(
    var_name: str, extra_patterns: List[re.Pattern] = ()
) -> bool:
    """Check if env var name is in the allowlist."""
    for pattern in _CORE_ENV_PATTERNS:
        if pattern.search(var_name):
            return True
    for pattern in extra_patterns:
        if pattern.search(var_name):
            return True
    return False


# ── File safety ───────────────────────────────────────────────────────


def _check_file_allowed(
    file_path: str,
    project_root: str = ".",
    allowed_dirs: List[str] = (),
) -> str:
    """Validate and resolve a file path for secret reading.

    Returns the resolved absolute path.
    Raises ValueError on validation failure.
    """
    path = Path(file_path)
    if not path.is_absolute():
        path = Path(project_root) / path

    if path.is_symlink():
        raise ValueError(f"Secret file must not be a symlink: {file_path}")

    resolved = path.resolve()
    allowed = [Path(project_root) / SECRETS_DIR] + [Path(d) for d in allowed_dirs]

    in_allowed = False
    for allowed_dir in allowed:
        try:
            resolved.relative_to(allowed_dir.resolve())
            in_allowed = True
            break
        except ValueError:
            continue

    if not in_allowed:
        raise ValueError(
            f"Secret file '{file_path}' not in allowed directories. "
            f"Allowed: {SECRETS_DIR}/ or configured secret_paths"
        )

    if not resolved.is_file():
        raise ValueError(f"Secret file not found: {resolved}")

    file_stat = resolved.stat()
    if file_stat.st_uid != os.getuid():
        raise ValueError(f"Secret file not owned by current user: {resolved}")

    mode = stat.S_IMODE(file_stat.st_mode)
    if mode & 0o137:
        raise ValueError(
            f"Secret file has unsafe permissions ({oct(mode)}): {resolved}. "
            f"Must be <= 0640"
        )

    return str(resolved)


# ── Interpolation ─────────────────────────────────────────────────────


def interpolate_value(
    value: str,
    project_root: str = ".",
    extra_env_patterns: List[re.Pattern] = (),
    allowed_file_dirs: List[str] = (),
) -> str:
    """Resolve interpolation tokens in a string value.

    Supports:
      {env:VAR_NAME} — read from environment (allowlisted)
      {file:/path}   — read from file (restricted directories)
    """

    def _replace(match: re.Match) -> str:
        source_type = match.group(1)
        source_ref = match.group(2)

        if source_type == "env":
            if not _check_env_allowed(source_ref, extra_env_patterns):
                raise ValueError(
                    f"Environment variable '{source_ref}' is not in the allowlist. "
                    f"Allowed: ^CHATSTREAM_.*, ^OPENAI_API_KEY$, ^XAI_API_KEY$, ^OLLAMA_.*"
                )
            val = os.environ.get(source_ref)
            if val is None:
                raise ValueError(f"Environment variable '{source_ref}' is not set")
            return val

        resolved_path = _check_file_allowed(source_ref, project_root, allowed_file_dirs)
        return Path(resolved_path).read_text().strip()

    return _INTERP_RE.sub(_replace, value)


def interpolate_config(
    config: Dict[str, Any],
    project_root: str = ".",
    extra_env_patterns: List[re.Pattern] = (),
    allowed_file_dirs: List[str] = (),
) -> Dict[str, Any]:
    """Recursively interpolate all string values in a config dict.

    Returns a new dict with resolved values.
    """
    args = (project_root, extra_env_patterns, allowed_file_dirs)
    result = {}
    for key, value in config.items():
        if isinstance(value, str) and _INTERP_RE.search(value):
            result[key] = interpolate_value(value, *args)
        elif isinstance(value, dict):
            result[key] = interpolate_config(value, *args)
        elif isinstance(value, list):
            result[key] = [
                interpolate_config(item, *args) if isinstance(item, dict)
                else interpolate_value(item, *args)
                if isinstance(item, str) and _INTERP_RE.search(item)
                else item
                for item in value
            ]
        else:
            result[key] = value
    return result


# ── Deep merge ────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win.

    Returns a new dict (base and overlay are not modified).
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ── Loading ───────────────────────────────────────────────────────────


def resolve_config_path(explicit: Optional[str] = None) -> Optional[str]:
    """Pick the config file: explicit path > $CHATSTREAM_CONFIG > ./.chatstream.yaml.

    Returns None when no file applies (defaults only).
    """
    if explicit:
        return explicit
    env_path = os.environ.get("CHATSTREAM_CONFIG")
    if env_path:
        return env_path
    if os.path.exists(DEFAULT_CONFIG_FILE):
        return DEFAULT_CONFIG_FILE
    return None


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    interpolate: bool = True,
) -> Dict[str, Any]:
    """Load layered config: defaults < YAML file < overrides.

    Raises ValueError on unreadable or malformed config and on failed
    interpolation.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    config_path = resolve_config_path(path)
    project_root = "."

    if config_path is not None:
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ValueError(f"Config not found: {config_path}")
        except OSError as e:
            raise ValueError(f"Cannot read config {config_path}: {e.strerror or e}")
        except yaml.YAMLError as e:
            raise ValueError(f"Malformed config {config_path}: {e}")
        if not isinstance(data, dict):
            raise ValueError(f"Config {config_path} must be a mapping")
        config = deep_merge(config, data)
        project_root = str(Path(config_path).resolve().parent)

    if overrides:
        config = deep_merge(config, overrides)

    logger.debug("Loaded config from %s: %s", config_path or "<defaults>", redact_config(config))

    if not interpolate:
        return config

    extra_patterns = [re.compile(p) for p in config.get("env_allowlist", [])]
    return interpolate_config(
        config,
        project_root=project_root,
        extra_env_patterns=extra_patterns,
        allowed_file_dirs=config.get("secret_paths", []),
    )


# ── Redaction ─────────────────────────────────────────────────────────


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Create a redacted copy of config for display/logging.

    Values sourced from {env:} or {file:} show '***REDACTED***'.
    Keys matching sensitive patterns are also redacted.
    """
    result = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = redact_config(value)
        elif isinstance(value, str) and _INTERP_RE.search(value):
            sources = _INTERP_RE.findall(value)
            annotations = ", ".join(f"{t}:{r}" for t, r in sources)
            result[key] = f"{REDACTED} (from {annotations})"
        elif _SENSITIVE_KEY_RE.search(key):
            result[key] = REDACTED
        else:
            result[key] = value
    return result


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with sensitive values redacted."""
    redacted = {}
    for key, value in headers.items():
        if _SENSITIVE_KEY_RE.search(key):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted


def redact_string(value: str) -> str:
    """Redact known secret patterns from a string.

    Replaces known env var values and auth headers.
    """
    result = value

    for env_var in ["OPENAI_API_KEY", "XAI_API_KEY"]:
        env_val = os.environ.get(env_var)
        if env_val and env_val in result:
            result = result.replace(env_val, REDACTED)

    for key, val in os.environ.items():
        if key.startswith("CHATSTREAM_") and val and len(val) > 8 and val in result:
            result = result.replace(val, REDACTED)

    result = re.sub(
        r"(Authorization:\s*Bearer\s+)\S+", rf"\1{REDACTED}", result, flags=re.IGNORECASE
    )
    result = re.sub(
        r"(Bearer\s+)(sk-|xai-)\S+", rf"\1{REDACTED}", result, flags=re.IGNORECASE
    )

    return result
