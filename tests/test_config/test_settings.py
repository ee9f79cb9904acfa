from pathlib import Path

import helmsman.config as config_module
from helmsman.config import Config


def test_missing_file_gives_defaults(tmp_path: Path):
    cfg = Config.from_yaml(tmp_path / "absent.yaml")

    assert cfg.model.provider == "ollama"
    assert cfg.task.mistake_limit == 3
    assert cfg.context.reserve_tokens == 40_000
    assert "attempt_completion" in cfg.tools.enabled


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  model: from-home\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    (tmp_path / "config.yaml").write_text(
        "model:\n  model: qwen3:32b\n  context_window: 32768\ntask:\n  always_allow_read_only: true\n",
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "qwen3:32b"
    assert cfg.task.always_allow_read_only is True
    assert cfg.resolved_context_window() == 32768


def test_env_overrides_nested_settings(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
    monkeypatch.setenv("HELM_TASK__STALL_LIMIT", "7")

    cfg = Config.load()

    assert cfg.task.stall_limit == 7


def test_resolved_context_window_falls_back_to_default():
    cfg = Config()
    cfg.model.context_window = None
    cfg.context.default_window = 64_000

    assert cfg.resolved_context_window() == 64_000


def test_save_round_trip(tmp_path: Path):
    cfg = Config()
    cfg.model.model = "mistral"
    cfg.tools.command_timeout = 30
    path = tmp_path / "out" / "config.yaml"

    cfg.save(path)
    loaded = Config.from_yaml(path)

    assert loaded.model.model == "mistral"
    assert loaded.tools.command_timeout == 30
