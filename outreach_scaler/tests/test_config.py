from __future__ import annotations

from pathlib import Path

import pytest

from scaler_core.config import DEFAULT_CONFIG_PATH, EngineConfig, load_config, resolve_config


def test_defaults_match_documented_values() -> None:
    cfg = EngineConfig()
    assert cfg.evaluation.pass_fraction == 0.8
    assert cfg.evaluation.interval_hours == 24
    assert cfg.retry.max_attempts == 2
    assert cfg.llm.enabled is False
    assert cfg.storage.state_path().name == "state.json"


def test_bundled_config_file_is_valid(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("OPENAI_API_KEY", "TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID", "SCALER_ADMIN_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    cfg = load_config(DEFAULT_CONFIG_PATH)
    assert cfg.llm.api_key is None
    assert cfg.web.admin_token is None


def test_env_placeholders_are_expanded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_TOKEN_FOR_TEST", "abc123")
    monkeypatch.delenv("UNSET_TOKEN_FOR_TEST", raising=False)
    path = tmp_path / "scaler.yaml"
    path.write_text(
        """
metrics:
  source: http
  url: https://metrics.example/kpis
  token: ${METRICS_TOKEN_FOR_TEST}
web:
  admin_token: ${UNSET_TOKEN_FOR_TEST}
""",
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert cfg.metrics.token == "abc123"
    assert cfg.web.admin_token is None


def test_guardrails_reject_inconsistent_settings(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("retry:\n  base_delay_sec: 10\n  max_delay_sec: 1\n", encoding="utf-8")
    with pytest.raises(ValueError, match="max_delay_sec"):
        load_config(path)

    path.write_text("metrics:\n  source: http\n", encoding="utf-8")
    with pytest.raises(ValueError, match="metrics.url"):
        load_config(path)

    path.write_text("evaluation:\n  pass_fraction: 1.5\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)

    path.write_text("surprise: true\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)


def test_resolve_config_prefers_env_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "scaler.yaml"
    path.write_text("evaluation:\n  interval_hours: 6\n", encoding="utf-8")
    monkeypatch.setenv("SCALER_CONFIG_PATH", str(path))
    assert resolve_config().evaluation.interval_hours == 6

    with pytest.raises(FileNotFoundError):
        resolve_config(tmp_path / "missing.yaml")
