import pytest

from moneyseed.config import _env_int


def test_env_int_uses_default_when_unset(monkeypatch) -> None:
    monkeypatch.delenv("DEFAULT_STREAK_TARGET", raising=False)
    assert _env_int("DEFAULT_STREAK_TARGET", 7, minimum=1) == 7
    monkeypatch.setenv("DEFAULT_STREAK_TARGET", "  ")
    assert _env_int("DEFAULT_STREAK_TARGET", 7, minimum=1) == 7


def test_env_int_reads_overrides(monkeypatch) -> None:
    monkeypatch.setenv("DEFAULT_STREAK_TARGET", "3")
    assert _env_int("DEFAULT_STREAK_TARGET", 7, minimum=1) == 3


@pytest.mark.parametrize("raw", ["0", "-2", "seven"])
def test_env_int_rejects_bad_streak_targets(monkeypatch, raw) -> None:
    monkeypatch.setenv("DEFAULT_STREAK_TARGET", raw)
    with pytest.raises(RuntimeError):
        _env_int("DEFAULT_STREAK_TARGET", 7, minimum=1)
