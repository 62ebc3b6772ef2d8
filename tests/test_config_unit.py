"""Settings loading, cookie attribute derivation and email normalization."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from sessiongate.config import (
    SESSION_COOKIE_NAME,
    Settings,
    get_settings,
    registrable_domain,
    reset_settings_cache,
)
from sessiongate.service.errors import ValidationError
from sessiongate.service.runtime import redact_dsn
from sessiongate.service.validation import normalize_email, normalize_unicode


class TestRegistrableDomain:
    @pytest.mark.parametrize(
        "origin,expected",
        [
            ("https://app.example.com", "example.com"),
            ("https://example.com", "example.com"),
            ("https://deep.app.example.co.uk:8443", "example.co.uk"),
            ("http://localhost:5173", None),
            ("http://127.0.0.1:3000", None),
            ("", None),
        ],
    )
    def test_origin_to_cookie_domain(self, origin, expected):
        assert registrable_domain(origin) == expected


class TestCookieSettings:
    def test_https_origin_gives_secure_domain_cookie(self):
        cookie = Settings(frontend_origin="https://app.example.com/some/path").cookie_settings()

        assert cookie.name == SESSION_COOKIE_NAME
        assert cookie.domain == "example.com"
        assert cookie.secure is True
        assert cookie.httponly is True
        assert cookie.samesite == "lax"
        assert cookie.path == "/"

    def test_plain_http_localhost_is_host_only_and_insecure(self):
        cookie = Settings(frontend_origin="http://localhost:5173").cookie_settings()

        assert cookie.domain is None
        assert cookie.secure is False

    def test_origin_is_reduced_to_scheme_and_host(self):
        settings = Settings(frontend_origin=" https://app.example.com/login?next=1 ")

        assert settings.frontend_origin == "https://app.example.com"

    @pytest.mark.parametrize("origin", ["app.example.com", "ftp://example.com", "https://"])
    def test_rejects_non_http_origins(self, origin):
        with pytest.raises(PydanticValidationError):
            Settings(frontend_origin=origin)


class TestSettingsFromEnv:
    def test_environment_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("SESSION_TTL_DAYS", "7")
        monkeypatch.setenv("CHALLENGE_TTL_MINUTES", "15")
        monkeypatch.setenv("FRONTEND_ORIGIN", "https://portal.example.org")
        reset_settings_cache()

        settings = get_settings()

        assert settings.session_ttl_days == 7
        assert settings.challenge_ttl_minutes == 15
        assert settings.frontend_origin == "https://portal.example.org"

    def test_settings_are_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        monkeypatch.setenv("SESSION_TTL_DAYS", "3")

        assert get_settings() is first

        reset_settings_cache()
        assert get_settings().session_ttl_days == 3

    def test_invalid_ttl_is_rejected(self, monkeypatch):
        monkeypatch.setenv("SESSION_TTL_DAYS", "0")

        with pytest.raises(PydanticValidationError):
            Settings.from_env()


class TestNormalizeEmail:
    def test_trims_and_lowercases(self):
        assert normalize_email("  Alice.Smith@Example.COM ") == "alice.smith@example.com"

    def test_strips_zero_width_and_applies_nfkc(self):
        spoofed = "al\u200bice@ex\ufeffample.com"

        assert normalize_email(spoofed) == "alice@example.com"
        # Fullwidth letters fold to ASCII under NFKC
        assert normalize_unicode("\uff41\uff42\uff43") == "abc"

    @pytest.mark.parametrize(
        "value",
        [
            "no-at-sign",
            "@example.com",
            "alice@",
            "alice@localhost",
            "alice@example.c",
            "ali ce@example.com",
            "alice@-example.com",
            "a" * 65 + "@example.com",
            "alice@" + "a" * 250 + ".com",
        ],
    )
    def test_rejects_implausible_addresses(self, value):
        with pytest.raises(ValidationError) as excinfo:
            normalize_email(value)

        assert excinfo.value.detail == {"field": "email"}
        assert excinfo.value.status_code == 400


class TestEnvFile:
    def test_env_file_fills_unset_variables(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("CHALLENGE_TTL_MINUTES=25\nSESSION_TTL_DAYS=9\n")
        monkeypatch.delenv("CHALLENGE_TTL_MINUTES", raising=False)
        monkeypatch.setenv("SESSION_TTL_DAYS", "4")

        settings = Settings.from_env(str(env_file))

        assert settings.challenge_ttl_minutes == 25
        # The process environment wins over the file
        assert settings.session_ttl_days == 4

    def test_every_field_names_its_variable(self):
        names = Settings.env_names()

        assert names["frontend_origin"] == "FRONTEND_ORIGIN"
        assert names["use_memory_store"] == "USE_MEMORY_STORE"
        assert set(names) == set(Settings.model_fields)


class TestRedactDsn:
    @pytest.mark.parametrize(
        "dsn,expected",
        [
            ("postgresql://app:secret@db:5432/auth", "postgresql://app:***@db:5432/auth"),
            ("postgresql://app@db/auth", "postgresql://app@db/auth"),
            ("postgresql://localhost/auth", "postgresql://localhost/auth"),
            (None, None),
        ],
    )
    def test_password_is_masked(self, dsn, expected):
        assert redact_dsn(dsn) == expected
