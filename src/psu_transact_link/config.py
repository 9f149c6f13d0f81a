from __future__ import annotations

import os
import re
import json
from pathlib import Path
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
_USER_ID_RE = re.compile(r"^[A-Za-z0-9_.@-]{1,128}$")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _parse_api_tokens_env(value: str) -> dict[str, str]:
    """
    Parse `API_TOKENS` into a token -> user id map.

    Accepted forms:
    - `tok1:alice,tok2:bob` (comma and/or whitespace separated)
    - `{"tok1": "alice"}` (JSON object)
    """
    s = (value or "").strip()
    if not s:
        return {}

    if s.startswith("{"):
        try:
            data = json.loads(s)
        except Exception:
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if str(k).strip() and str(v).strip()}

    out: dict[str, str] = {}
    for item in re.split(r"[,\s]+", s):
        if ":" not in item:
            continue
        token, user_id = item.split(":", 1)
        token = token.strip()
        user_id = user_id.strip()
        if not token or not _USER_ID_RE.match(user_id):
            # Skip junk entries rather than refusing to start.
            continue
        out[token] = user_id
    return out


def _default_config_from_env() -> dict:
    """
    Env-only config so a deployment only needs `.env`; YAML remains an optional override.
    """
    return {
        "portal": {
            "idp_url": os.getenv("PORTAL_IDP_URL", "https://login.microsoftonline.com/"),
            "summary_url": os.getenv(
                "PORTAL_SUMMARY_URL", "https://psu-sp.transactcampus.com/PSU/AccountSummary.aspx"
            ),
            "ledger_url": os.getenv(
                "PORTAL_LEDGER_URL", "https://psu-sp.transactcampus.com/PSU/AccountTransaction.aspx"
            ),
            "landing_timeout_seconds": _env_int("PORTAL_LANDING_TIMEOUT_SECONDS", 60),
            "navigation_timeout_seconds": _env_int("PORTAL_NAVIGATION_TIMEOUT_SECONDS", 45),
            "grid_first_wait_seconds": _env_int("PORTAL_GRID_FIRST_WAIT_SECONDS", 60),
            "grid_retry_wait_seconds": _env_int("PORTAL_GRID_RETRY_WAIT_SECONDS", 45),
        },
        "browser": {
            "headless": _env_bool("BROWSER_HEADLESS", default=True),
            "slow_mo_ms": _env_int("BROWSER_SLOW_MO_MS", 0),
            "storage_dir": os.getenv("BROWSER_STORAGE_DIR", "data/sessions"),
            "debug_dir": os.getenv("BROWSER_DEBUG_DIR", "data/debug"),
            "save_debug_artifacts": _env_bool("BROWSER_SAVE_DEBUG_ARTIFACTS", default=True),
        },
        "sessions": {
            "mfa_ttl_seconds": _env_int("SESSION_MFA_TTL_SECONDS", 120),
            "terminal_retention_seconds": _env_int("SESSION_TERMINAL_RETENTION_SECONDS", 60),
            "sweep_interval_seconds": _env_int("SESSION_SWEEP_INTERVAL_SECONDS", 15),
        },
        "sync": {
            "default_lookback_months": _env_int("SYNC_DEFAULT_LOOKBACK_MONTHS", 6),
        },
        "state": {
            "db_path": os.getenv("STATE_DB_PATH", "data/state.db"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/psu_transact_link.log"),
        },
        "api": {
            "host": os.getenv("API_HOST", "127.0.0.1"),
            "port": _env_int("API_PORT", 8000),
            "prefix": os.getenv("API_PREFIX", "/api/v1"),
            "tokens": _parse_api_tokens_env(os.getenv("API_TOKENS", "")),
        },
    }


class PortalConfig(BaseModel):
    """
    Identity provider + Transact portal endpoints.

    The portal is only reachable through the university's Microsoft Entra ID SSO. `url_markers` decide
    whether a browser page "is on the portal"; keep them lowercase.
    """

    idp_url: str = "https://login.microsoftonline.com/"
    summary_url: str = "https://psu-sp.transactcampus.com/PSU/AccountSummary.aspx"
    ledger_url: str = "https://psu-sp.transactcampus.com/PSU/AccountTransaction.aspx"
    url_markers: list[str] = Field(
        default_factory=lambda: ["transactcampus.com", "accountsummary.aspx", "accounttransaction.aspx"]
    )
    # Intermediate SAML endpoints only reached after the push was approved.
    approved_url_markers: list[str] = Field(default_factory=lambda: ["/saml2", "/sas/processauth"])
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125 Safari/537.36"
    )

    landing_timeout_seconds: int = 60
    navigation_timeout_seconds: int = 45
    grid_first_wait_seconds: int = 60
    grid_retry_wait_seconds: int = 45

    @model_validator(mode="after")
    def _validate_urls(self) -> "PortalConfig":
        for name in ("idp_url", "summary_url", "ledger_url"):
            value = (getattr(self, name) or "").strip()
            parsed = urlparse(value)
            if not parsed.scheme or not parsed.netloc:
                raise ValueError(f"portal.{name} must be a full URL (got {value!r})")
            setattr(self, name, value)
        self.url_markers = [m.strip().lower() for m in self.url_markers if m and m.strip()]
        if not self.url_markers:
            raise ValueError("portal.url_markers must contain at least one marker")
        self.approved_url_markers = [m.strip().lower() for m in self.approved_url_markers if m and m.strip()]
        return self


class BrowserConfig(BaseModel):
    headless: bool = True
    slow_mo_ms: int = 0
    # Tried in order when Playwright's bundled Chromium is not installed.
    channel_fallbacks: list[str] = Field(default_factory=lambda: ["chrome", "msedge"])
    storage_dir: str = "data/sessions"
    debug_dir: str = "data/debug"
    save_debug_artifacts: bool = True


class SessionsConfig(BaseModel):
    mfa_ttl_seconds: int = 120
    terminal_retention_seconds: int = 60
    sweep_interval_seconds: int = 15

    @model_validator(mode="after")
    def _validate_positive(self) -> "SessionsConfig":
        if self.mfa_ttl_seconds <= 0:
            raise ValueError("sessions.mfa_ttl_seconds must be positive")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sessions.sweep_interval_seconds must be positive")
        if self.terminal_retention_seconds < 0:
            raise ValueError("sessions.terminal_retention_seconds must not be negative")
        return self


class SyncConfig(BaseModel):
    default_lookback_months: int = 6


class StateConfig(BaseModel):
    db_path: str = "data/state.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/psu_transact_link.log"


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    prefix: str = "/api/v1"
    # Bearer token -> application user id. Issuing these tokens is the job of the app's own auth service.
    tokens: dict[str, str] = Field(default_factory=dict, repr=False)

    @model_validator(mode="after")
    def _normalize_prefix(self) -> "ApiConfig":
        prefix = (self.prefix or "").strip().rstrip("/")
        if prefix and not prefix.startswith("/"):
            prefix = "/" + prefix
        self.prefix = prefix
        return self


class AppConfig(BaseModel):
    portal: PortalConfig = PortalConfig()
    browser: BrowserConfig = BrowserConfig()
    sessions: SessionsConfig = SessionsConfig()
    sync: SyncConfig = SyncConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()
    api: ApiConfig = ApiConfig()


def load_config(path: Union[str, Path, None] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
