"""Tests for token login configuration.

Tests for:
- Defaults and overrides merging
- Rejection of malformed settings
- Factor registration and replacement
- Environment settings translation
"""

import dataclasses

import pydantic
import pytest

from tokenlogin.config import (
    UNMISTAKABLE_CHARS,
    Settings,
    TokenLoginConfig,
    build_token_login_config,
    configure,
    make_token_generator,
)
from tokenlogin.service.errors import InvalidConfig
from tokenlogin.service.factors import FactorSpec


async def _noop_send(contact, token, factor, settings=None):
    return None


class TestDefaults:
    def test_defaults_match_documented_policy(self):
        config = configure()

        assert config.expiry_seconds == 300
        assert config.retain_seconds == 7 * 24 * 60 * 60
        assert config.request_interval_seconds == 10
        assert config.request_count == 1
        assert config.timeout_ms == 1000
        assert config.profile == "TokenLogin"
        assert config.identifier == "LoginSession"
        assert config.dev_token_fallback is False
        assert len(config.factors) == 0

    def test_default_validate_limits_everyone(self):
        assert configure().validate("anyone") is True

    def test_default_generator_uses_unambiguous_alphabet(self):
        config = configure()
        tokens = {config.generate() for _ in range(50)}

        assert all(len(token) == 6 for token in tokens)
        assert all(ch in UNMISTAKABLE_CHARS for token in tokens for ch in token)
        # 50 draws from a 55^6 space should not collide
        assert len(tokens) == 50

    def test_custom_generator_length(self):
        assert len(make_token_generator(10)()) == 10

    def test_config_is_frozen(self):
        config = configure()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.expiry_seconds = 1  # type: ignore[misc]


class TestOverrides:
    def test_overrides_merge_over_defaults(self):
        config = configure({"expiry_seconds": 60, "profile": "TwoFactorLogin"})

        assert config.expiry_seconds == 60
        assert config.profile == "TwoFactorLogin"
        assert config.retain_seconds == 7 * 24 * 60 * 60

    def test_base_is_left_untouched(self):
        base = configure({"expiry_seconds": 60})
        derived = configure({"request_count": 5}, base=base)

        assert derived.expiry_seconds == 60
        assert derived.request_count == 5
        assert base.request_count == 1

    def test_custom_generate_and_validate(self):
        config = configure({"generate": lambda: "123456", "validate": lambda caller: False})

        assert config.generate() == "123456"
        assert config.validate("x") is False

    def test_settings_mapping_is_read_only(self):
        config = configure({"settings": {"greeting": "hi"}})

        assert config.settings["greeting"] == "hi"
        with pytest.raises(TypeError):
            config.settings["greeting"] = "bye"  # type: ignore[index]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"expiry_seconds": 0},
            {"retain_seconds": -1},
            {"request_interval_seconds": 1.5},
            {"request_count": True},
            {"timeout_ms": "1000"},
            {"generate": "not callable"},
            {"validate": None},
            {"profile": ""},
            {"identifier": 7},
            {"settings": ["a"]},
            {"dev_token_fallback": "yes"},
            {"unknown_key": 1},
        ],
    )
    def test_malformed_overrides_raise(self, overrides):
        with pytest.raises(InvalidConfig):
            configure(overrides)


class TestFactors:
    def test_register_factor_from_mapping(self):
        config = configure({"factors": {"telegram": {"send": _noop_send, "settings": {"timeout_ms": 5000}}}})

        spec = config.factors.resolve("telegram")
        assert spec is not None
        assert spec.name == "telegram"
        assert spec.timeout_ms == 5000

    def test_register_factor_from_callable(self):
        config = configure({"factors": {"sms": _noop_send}})

        assert config.factors.resolve("sms").send is _noop_send

    def test_factor_without_send_is_rejected(self):
        with pytest.raises(InvalidConfig) as excinfo:
            configure({"factors": {"telegram": {"settings": {}}}})
        assert excinfo.value.detail == {"factor": "telegram"}

    def test_factor_with_bad_timeout_is_rejected(self):
        with pytest.raises(InvalidConfig):
            configure({"factors": {"telegram": {"send": _noop_send, "settings": {"timeout_ms": 0}}}})

    def test_factor_name_must_be_string(self):
        with pytest.raises(InvalidConfig):
            configure({"factors": {"": _noop_send}})

    def test_same_name_replaces_existing_factor(self):
        async def other_send(contact, token, factor, settings=None):
            return "other"

        base = configure({"factors": {"email": _noop_send, "sms": _noop_send}})
        config = configure({"factors": {"email": other_send}}, base=base)

        assert config.factors.resolve("email").send is other_send
        assert config.factors.resolve("sms").send is _noop_send
        assert base.factors.resolve("email").send is _noop_send

    def test_factor_spec_is_accepted(self):
        spec = FactorSpec(name="ignored", send=_noop_send)
        config = configure({"factors": {"push": spec}})

        assert config.factors.resolve("push").name == "push"

    def test_unknown_factor_resolves_to_none(self):
        assert configure().factors.resolve("pigeon") is None


class TestSettingsTranslation:
    def test_build_from_settings(self):
        settings = Settings(
            token_expiry_seconds=120,
            token_request_count=3,
            token_profile="TwoFactorLogin",
            token_length=8,
        )
        config = build_token_login_config(settings, {"email": _noop_send})

        assert isinstance(config, TokenLoginConfig)
        assert config.expiry_seconds == 120
        assert config.request_count == 3
        assert config.profile == "TwoFactorLogin"
        assert len(config.generate()) == 8
        assert "email" in config.factors

    def test_settings_reject_non_positive_durations(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(token_expiry_seconds=0)

    def test_settings_read_environment(self, monkeypatch):
        from tokenlogin.config import get_settings, reset_settings_cache

        monkeypatch.setenv("TOKEN_EXPIRY_SECONDS", "45")
        monkeypatch.setenv("DEV_TOKEN_FALLBACK", "true")
        reset_settings_cache()
        try:
            settings = get_settings()
            assert settings.token_expiry_seconds == 45
            assert settings.dev_token_fallback is True
        finally:
            reset_settings_cache()
