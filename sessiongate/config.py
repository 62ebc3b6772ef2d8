from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlsplit

import tldextract
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessiongate.logging import get_logger

logger = get_logger(__name__)

SESSION_COOKIE_NAME = "session"

# Bundled public suffix snapshot; never fetched over the network.
_suffix_extractor = tldextract.TLDExtract(suffix_list_urls=())


def env_field(default: Any, env: str, **kwargs):
    """``Field`` tagged with the environment variable that overrides it."""
    return Field(default, json_schema_extra={"env": env}, **kwargs)


@dataclass(frozen=True)
class CookieSettings:
    """Attributes of the session cookie, derived once from the frontend origin."""

    name: str = SESSION_COOKIE_NAME
    domain: Optional[str] = None
    secure: bool = False
    samesite: str = "lax"
    httponly: bool = True
    path: str = "/"


def registrable_domain(origin: str) -> Optional[str]:
    """Return the registrable domain of ``origin`` or ``None`` for bare hosts.

    ``https://app.example.co.uk`` yields ``example.co.uk``; ``localhost`` and IP
    literals yield ``None`` so the cookie falls back to a host-only cookie.
    """
    host = urlsplit(origin).hostname or ""
    if not host:
        return None
    parts = _suffix_extractor(host)
    if not parts.domain or not parts.suffix:
        return None
    return f"{parts.domain}.{parts.suffix}"


class Settings(BaseModel):
    """Runtime settings for the session and challenge engine."""

    app_name: str = env_field("Sessiongate", "APP_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/sessiongate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables test-only hooks such as runtime resets",
    )
    frontend_origin: str = env_field(
        "http://localhost:5173",
        "FRONTEND_ORIGIN",
        description="Origin of the browser client; drives CORS and cookie attributes",
    )
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS", ge=1)
    challenge_ttl_minutes: int = env_field(10, "CHALLENGE_TTL_MINUTES", ge=1)
    # Email delivery; unset SMTP_HOST means codes are only logged (dev mode)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sessiongate", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def env_names(cls) -> dict[str, str]:
        """Field name -> environment variable, from each field's ``env`` marker."""
        names = {}
        for name, info in cls.model_fields.items():
            extra = info.json_schema_extra if isinstance(info.json_schema_extra, dict) else {}
            names[name] = str(extra.get("env", name.upper()))
        return names

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Process environment first, then ``env_file``, then field defaults."""
        sources = (os.environ, dotenv_values(env_file))
        values = {}
        for name, env_name in cls.env_names().items():
            for source in sources:
                if source.get(env_name) is not None:
                    values[name] = source[env_name]
                    break
        return cls(**values)

    @field_validator("frontend_origin")
    @classmethod
    def _validate_frontend_origin(cls, value: str) -> str:
        parsed = urlsplit(value.strip())
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            raise ValueError("FRONTEND_ORIGIN must be an absolute http(s) URL")
        return f"{parsed.scheme}://{parsed.netloc}"

    def cookie_settings(self) -> CookieSettings:
        secure = urlsplit(self.frontend_origin).scheme == "https"
        settings = CookieSettings(
            domain=registrable_domain(self.frontend_origin),
            secure=secure,
        )
        logger.info(
            "cookie_settings_resolved",
            domain=settings.domain,
            secure=settings.secure,
        )
        return settings


_cached: Optional[Settings] = None


def get_settings() -> Settings:
    global _cached
    if _cached is None:
        _cached = Settings.from_env()
    return _cached


def reset_settings_cache() -> None:
    global _cached
    _cached = None
