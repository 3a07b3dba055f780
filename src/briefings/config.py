"""Process configuration loading and validation.

Settings are read once at startup from environment variables, optionally
overlaid by a TOML file named by ``BRIEFINGS_CONFIG``::

    [briefings]
    environment = "production"
    encryption_key = "${BRIEFINGS_ENCRYPTION_KEY}"
    dashboard_url = "https://crm.example.com/settings"

    [google]
    client_id = "${GOOGLE_OAUTH_CLIENT_ID}"
    client_secret = "${GOOGLE_OAUTH_CLIENT_SECRET}"
    redirect_uri = "https://crm.example.com/api/oauth/google/callback"

    [sync]
    run_timeout_seconds = 900
    default_window = "future"
    poll_interval_minutes = 60

    [logging]
    level = "INFO"
    format = "json"

Values set in the TOML file win over the environment; ``${VAR}`` references
inside the file are resolved against the environment and must be set.
"""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from briefings.errors import ConfigurationError

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEVELOPMENT_ENVIRONMENTS = frozenset({"development", "dev", "local", "test"})

DEFAULT_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
)

VALID_WINDOW_POLICIES = ("future", "all")
VALID_LOG_FORMATS = ("text", "json")


@dataclass(frozen=True)
class GoogleOAuthSettings:
    """OAuth client registration used by the connector."""

    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: tuple[str, ...] = DEFAULT_SCOPES

    def __repr__(self) -> str:
        return (
            f"GoogleOAuthSettings(client_id={self.client_id!r}, "
            f"client_secret=<redacted>, redirect_uri={self.redirect_uri!r})"
        )


@dataclass(frozen=True)
class SyncSettings:
    """Tunables for the sync reconciler and event fetcher."""

    run_timeout_seconds: float = 900.0
    http_timeout_seconds: float = 10.0
    token_safety_margin_seconds: int = 60
    page_size: int = 250
    max_fetch_retries: int = 3
    backoff_base_seconds: float = 1.0
    default_window: str = "future"
    poll_interval_minutes: int = 0


@dataclass(frozen=True)
class LoggingSettings:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"


@dataclass(frozen=True)
class Settings:
    """Top-level process settings."""

    google: GoogleOAuthSettings
    environment: str = "development"
    encryption_key: str | None = field(default=None, repr=False)
    dashboard_url: str | None = None
    cors_origins: tuple[str, ...] = ("http://localhost:3000",)
    sync: SyncSettings = field(default_factory=SyncSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @property
    def is_development(self) -> bool:
        return self.environment in DEVELOPMENT_ENVIRONMENTS


# ---------------------------------------------------------------------------
# ${VAR} interpolation
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any, env: Mapping[str, str]) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in parsed TOML values."""
    if isinstance(value, dict):
        return {k: resolve_env_vars(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item, env) for item in value]
    if isinstance(value, str):
        return _resolve_string(value, env)
    return value


def _resolve_string(s: str, env: Mapping[str, str]) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = env.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigurationError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )
    return result


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def _pick(section: Mapping[str, Any], key: str, env: Mapping[str, str], env_name: str) -> Any:
    if key in section and section[key] not in (None, ""):
        return section[key]
    raw = env.get(env_name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _positive_number(value: Any, name: str, default: float, *, integer: bool = False) -> Any:
    if value is None:
        return int(default) if integer else float(default)
    try:
        parsed = int(value) if integer else float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc
    if parsed < 0:
        raise ConfigurationError(f"{name} must not be negative, got {value!r}")
    return parsed


def _read_toml(path: Path, env: Mapping[str, str]) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigurationError(f"Config file not found: {path}")
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML in {path}: {exc}") from exc
    return resolve_env_vars(data, env)


# ---------------------------------------------------------------------------
# load_settings()
# ---------------------------------------------------------------------------


def load_settings(
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Build validated settings from the environment and an optional TOML file.

    Raises
    ------
    ConfigurationError
        When a required value is missing or a value has the wrong shape.
    """
    env = os.environ if env is None else env
    if config_path is None and env.get("BRIEFINGS_CONFIG"):
        config_path = env["BRIEFINGS_CONFIG"]
    data = _read_toml(Path(config_path), env) if config_path is not None else {}

    core = data.get("briefings", {})
    google_section = data.get("google", {})
    sync_section = data.get("sync", {})
    logging_section = data.get("logging", {})

    environment = str(_pick(core, "environment", env, "BRIEFINGS_ENV") or "development").lower()
    encryption_key = _pick(core, "encryption_key", env, "BRIEFINGS_ENCRYPTION_KEY")
    if encryption_key is None and environment not in DEVELOPMENT_ENVIRONMENTS:
        raise ConfigurationError(
            f"BRIEFINGS_ENCRYPTION_KEY must be set when BRIEFINGS_ENV={environment}"
        )

    client_id = _pick(google_section, "client_id", env, "GOOGLE_OAUTH_CLIENT_ID")
    client_secret = _pick(google_section, "client_secret", env, "GOOGLE_OAUTH_CLIENT_SECRET")
    redirect_uri = _pick(google_section, "redirect_uri", env, "GOOGLE_OAUTH_REDIRECT_URI")
    missing = [
        name
        for name, value in (
            ("GOOGLE_OAUTH_CLIENT_ID", client_id),
            ("GOOGLE_OAUTH_CLIENT_SECRET", client_secret),
            ("GOOGLE_OAUTH_REDIRECT_URI", redirect_uri),
        )
        if value is None
    ]
    if missing:
        raise ConfigurationError(f"Missing required Google OAuth setting(s): {', '.join(missing)}")

    scopes = google_section.get("scopes") or DEFAULT_SCOPES
    if not isinstance(scopes, list | tuple) or not all(isinstance(s, str) for s in scopes):
        raise ConfigurationError("google.scopes must be a list of strings")

    default_window = str(
        _pick(sync_section, "default_window", env, "BRIEFINGS_SYNC_DEFAULT_WINDOW") or "future"
    )
    if default_window not in VALID_WINDOW_POLICIES:
        raise ConfigurationError(
            f"sync.default_window must be one of {', '.join(VALID_WINDOW_POLICIES)}, "
            f"got {default_window!r}"
        )

    sync = SyncSettings(
        run_timeout_seconds=_positive_number(
            _pick(sync_section, "run_timeout_seconds", env, "BRIEFINGS_SYNC_RUN_TIMEOUT_SECONDS"),
            "sync.run_timeout_seconds",
            900,
        ),
        http_timeout_seconds=_positive_number(
            _pick(sync_section, "http_timeout_seconds", env, "BRIEFINGS_HTTP_TIMEOUT_SECONDS"),
            "sync.http_timeout_seconds",
            10,
        ),
        token_safety_margin_seconds=_positive_number(
            _pick(sync_section, "token_safety_margin_seconds", env, "BRIEFINGS_TOKEN_MARGIN"),
            "sync.token_safety_margin_seconds",
            60,
            integer=True,
        ),
        page_size=_positive_number(
            _pick(sync_section, "page_size", env, "BRIEFINGS_SYNC_PAGE_SIZE"),
            "sync.page_size",
            250,
            integer=True,
        ),
        max_fetch_retries=_positive_number(
            sync_section.get("max_fetch_retries"), "sync.max_fetch_retries", 3, integer=True
        ),
        backoff_base_seconds=_positive_number(
            sync_section.get("backoff_base_seconds"), "sync.backoff_base_seconds", 1.0
        ),
        default_window=default_window,
        poll_interval_minutes=_positive_number(
            _pick(sync_section, "poll_interval_minutes", env, "BRIEFINGS_SYNC_POLL_MINUTES"),
            "sync.poll_interval_minutes",
            0,
            integer=True,
        ),
    )

    log_format = str(_pick(logging_section, "format", env, "BRIEFINGS_LOG_FORMAT") or "text")
    if log_format not in VALID_LOG_FORMATS:
        raise ConfigurationError(f"logging.format must be 'text' or 'json', got {log_format!r}")
    logging_settings = LoggingSettings(
        level=str(_pick(logging_section, "level", env, "BRIEFINGS_LOG_LEVEL") or "INFO").upper(),
        format=log_format,
    )

    cors_raw = _pick(core, "cors_origins", env, "BRIEFINGS_CORS_ORIGINS")
    if cors_raw is None:
        cors_origins: tuple[str, ...] = ("http://localhost:3000",)
    elif isinstance(cors_raw, str):
        cors_origins = tuple(o.strip() for o in cors_raw.split(",") if o.strip())
    else:
        cors_origins = tuple(str(o) for o in cors_raw)

    return Settings(
        google=GoogleOAuthSettings(
            client_id=str(client_id),
            client_secret=str(client_secret),
            redirect_uri=str(redirect_uri),
            scopes=tuple(scopes),
        ),
        environment=environment,
        encryption_key=encryption_key,
        dashboard_url=_pick(core, "dashboard_url", env, "BRIEFINGS_DASHBOARD_URL"),
        cors_origins=cors_origins,
        sync=sync,
        logging=logging_settings,
    )
