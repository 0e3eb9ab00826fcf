"""Run configuration.

All timing knobs of the observation engine live here with the defaults the
engine has always used. The correlation window and the wait-for-effect
timeout have no per-site calibration; they are plain configurable defaults.

Typical usage:
    >>> from verax.core.config import load_config
    >>> config = load_config(Path(".verax/config.json"))
    >>> config.correlation_window_ms
    2500
"""

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from verax.core.errors import ConfigError

DEFAULT_CONFIG_PATH = Path(".verax") / "config.json"
"""Project-local config file picked up when no explicit path is given."""


class RunConfig(BaseModel):
    """Immutable configuration for one run.

    Attributes:
        global_budget_ms: Wall-clock budget for the whole observation phase.
        effect_timeout_ms: Wait-for-effect window after each action.
        settle_delay_ms: Delay between the action and the after-state capture.
        correlation_window_ms: Requests starting within this many ms after
            action start (inclusive) are correlated with the action.
        click_timeout_ms: Timeout passed to click/submit calls.
        navigation_timeout_ms: Timeout for the initial page load.
        network_idle_timeout_ms: Best-effort network-idle wait after load.
        state_observe_ms: Passive observation window for state expectations.
        network_observe_ms: Passive observation window for network expectations.
        validation_wait_ms: Wait for validation feedback after a submit.
        slow_request_ms: Requests slower than this count as slow.
        headless: Launch the browser headless.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    global_budget_ms: int = Field(300_000, gt=0)
    effect_timeout_ms: int = Field(3000, gt=0)
    settle_delay_ms: int = Field(500, ge=0)
    correlation_window_ms: int = Field(2500, ge=0)
    click_timeout_ms: int = Field(3000, gt=0)
    navigation_timeout_ms: int = Field(30_000, gt=0)
    network_idle_timeout_ms: int = Field(10_000, gt=0)
    state_observe_ms: int = Field(1500, gt=0)
    network_observe_ms: int = Field(2000, gt=0)
    validation_wait_ms: int = Field(1000, gt=0)
    slow_request_ms: int = Field(3000, gt=0)
    headless: bool = True


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def build_config(values: dict[str, Any] | None = None, **overrides: Any) -> RunConfig:
    """Validate raw values into a RunConfig.

    Args:
        values: Values read from a config file.
        **overrides: Values from the command line; None entries are ignored.

    Returns:
        The validated configuration.

    Raises:
        ConfigError: If any value is invalid or unknown.
    """
    merged = dict(values or {})
    merged.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return RunConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {_describe(e)}") from None


def load_config(path: Path | None = None, **overrides: Any) -> RunConfig:
    """Load configuration from a JSON file.

    When ``path`` is None the project-local ``.verax/config.json`` is used if
    it exists, otherwise defaults apply.

    Args:
        path: Explicit config file. Must exist when given.
        **overrides: Command-line overrides applied on top of the file.

    Returns:
        The validated configuration.

    Raises:
        ConfigError: If the file is missing, unreadable, not a JSON object, or
            contains invalid values.
    """
    if path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return build_config(None, **overrides)
        path = DEFAULT_CONFIG_PATH
    elif not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read {path}: {e}") from None
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return build_config(raw, **overrides)
