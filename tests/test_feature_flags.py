from __future__ import annotations

import os

from cipherpot.core import feature_flags


def test_env_and_override_stack() -> None:
    env_var = feature_flags.ENV_VAR
    original = os.environ.get(env_var)
    try:
        if env_var in os.environ:
            del os.environ[env_var]

        assert feature_flags.is_enabled(feature_flags.STRICT_CONSERVATION) is False

        feature_flags.set_env_flags([feature_flags.STRICT_CONSERVATION])
        assert feature_flags.is_enabled(feature_flags.STRICT_CONSERVATION) is True

        with feature_flags.override(disable={feature_flags.STRICT_CONSERVATION}):
            assert feature_flags.is_enabled(feature_flags.STRICT_CONSERVATION) is False
            with feature_flags.override(enable={feature_flags.AUDIT_REVEALS}):
                assert feature_flags.is_enabled(feature_flags.AUDIT_REVEALS) is True
                assert feature_flags.is_enabled(feature_flags.STRICT_CONSERVATION) is False

        assert feature_flags.is_enabled(feature_flags.STRICT_CONSERVATION) is True
        assert feature_flags.is_enabled(feature_flags.AUDIT_REVEALS) is False

    finally:
        if original is None:
            os.environ.pop(env_var, None)
        else:
            os.environ[env_var] = original


def test_env_parsing_is_case_insensitive_and_skips_blanks(monkeypatch) -> None:
    monkeypatch.setenv(feature_flags.ENV_VAR, " Cipher.Audit_Reveals , ,")
    assert feature_flags.active_flags() == frozenset({feature_flags.AUDIT_REVEALS})
    assert feature_flags.is_enabled("CIPHER.AUDIT_REVEALS")


def test_unknown_flag_is_reported_disabled(monkeypatch) -> None:
    monkeypatch.delenv(feature_flags.ENV_VAR, raising=False)
    assert feature_flags.is_enabled("does.not.exist") is False
