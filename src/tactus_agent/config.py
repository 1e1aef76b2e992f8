"""Configuration for tactus-agent.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./tactus.yaml``
  3. ``~/.config/tactus/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a config file holds values that cannot be used."""


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProfileSpec:
    """A named OpenAI-compatible provider.

    ``url`` may be given with or without the ``/v1`` suffix.
    """

    provider: str = "openai"
    url: str = "https://api.openai.com"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    extra_params: dict[str, Any] = field(default_factory=dict)

    def resolved_api_key(self) -> str:
        return self.api_key or os.environ.get("OPENAI_API_KEY", "")


@dataclass
class RetrySpec:
    """Network retry policy for one logical send.

    ``max_attempts`` counts physical attempts, the first one included.
    ``timeout`` bounds the wait for response headers; ``read_timeout``
    bounds every chunk read once the stream is open.
    """

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 30.0
    jitter: float = 1.0
    timeout: float = 60.0
    read_timeout: float = 60.0

    def delay(self, retry_index: int, jitter: float = 0.0) -> float:
        """Seconds to wait before retry number *retry_index* (0-based)."""
        return min(self.backoff_base * (2 ** retry_index) + jitter, self.backoff_cap)


@dataclass
class LoopSpec:
    """Bounds for the reason-act loop."""

    max_iterations: int = 10
    tool_retry_budget: int = 3


@dataclass
class AgentConfig:
    """Top-level config."""

    profile: str = "default"
    profiles: dict[str, ProfileSpec] = field(
        default_factory=lambda: {"default": ProfileSpec()}
    )
    retry: RetrySpec = field(default_factory=RetrySpec)
    loop: LoopSpec = field(default_factory=LoopSpec)
    language: str = "en"
    system_prompt: str = ""

    @property
    def active_profile(self) -> ProfileSpec:
        return self.profiles.get(self.profile, ProfileSpec())


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./tactus.yaml"),
    Path.home() / ".config" / "tactus" / "config.yaml",
]


def _parse_profile(raw: dict[str, Any]) -> ProfileSpec:
    default = ProfileSpec()
    return ProfileSpec(
        provider=raw.get("provider", default.provider),
        url=raw.get("url", default.url),
        api_key=raw.get("api_key", "") or "",
        model=raw.get("model", default.model),
        extra_params=raw.get("extra_params", {}) or {},
    )


def _number(raw: dict[str, Any], key: str, default: float, *, minimum: float) -> Any:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{key} must be a number, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value!r}")
    return value


def _parse_retry(raw: dict[str, Any] | None) -> RetrySpec:
    if not raw:
        return RetrySpec()
    d = RetrySpec()
    return RetrySpec(
        max_attempts=int(_number(raw, "max_attempts", d.max_attempts, minimum=1)),
        backoff_base=float(_number(raw, "backoff_base", d.backoff_base, minimum=0)),
        backoff_cap=float(_number(raw, "backoff_cap", d.backoff_cap, minimum=0)),
        jitter=float(_number(raw, "jitter", d.jitter, minimum=0)),
        timeout=float(_number(raw, "timeout", d.timeout, minimum=0.001)),
        read_timeout=float(_number(raw, "read_timeout", d.read_timeout, minimum=0.001)),
    )


def _parse_loop(raw: dict[str, Any] | None) -> LoopSpec:
    if not raw:
        return LoopSpec()
    d = LoopSpec()
    return LoopSpec(
        max_iterations=int(_number(raw, "max_iterations", d.max_iterations, minimum=1)),
        tool_retry_budget=int(
            _number(raw, "tool_retry_budget", d.tool_retry_budget, minimum=0)
        ),
    )


def parse_config(raw: dict[str, Any]) -> AgentConfig:
    """Build an ``AgentConfig`` from an already-loaded mapping."""
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")

    profiles: dict[str, ProfileSpec] = {}
    for name, praw in (raw.get("profiles") or {}).items():
        profiles[name] = _parse_profile(praw or {})
    if not profiles:
        profiles["default"] = ProfileSpec()

    profile = raw.get("profile") or next(iter(profiles))
    if profile not in profiles:
        raise ConfigError(
            f"Unknown profile {profile!r}; defined: {', '.join(sorted(profiles))}"
        )

    return AgentConfig(
        profile=profile,
        profiles=profiles,
        retry=_parse_retry(raw.get("retry")),
        loop=_parse_loop(raw.get("loop")),
        language=raw.get("language", "en"),
        system_prompt=raw.get("system_prompt", "") or "",
    )


def load_config(path: str | Path | None = None) -> tuple[AgentConfig, Path | None]:
    """Load configuration from YAML.

    Returns the config and the file it came from (``None`` for defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return AgentConfig(), None
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return AgentConfig(), None

    _logger.info("Loading config from %s", config_path)
    try:
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    return parse_config(raw), config_path
