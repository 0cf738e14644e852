# tests/test_main.py
"""
CLI argument handling and exit codes (paths that stop before any I/O).
"""

import pytest

from jobdriver.main import EXIT_CONFIG, _build_cli, _settings, main_cli

def test_no_command_prints_help(capsys):
    assert main_cli([]) == EXIT_CONFIG
    assert "usage: jobdriver" in capsys.readouterr().out

def test_invalid_setting_exits_with_config_code(capsys):
    assert main_cli(["--loglevel", "chatty", "run", "myapp.workers"]) == EXIT_CONFIG
    assert "configuration error" in capsys.readouterr().err

def test_flags_override_environment(monkeypatch):
    monkeypatch.setenv("JOBDRIVER_INTERVAL", "30s")
    monkeypatch.setenv("JOBDRIVER_CONSOLE_PORT", "4000")
    args = _build_cli().parse_args(["--server", "redis-a:6379", "run", "pkg", "--interval", "2s", "--tracing", "console"])
    s = _settings(args)
    assert s.interval == 2.0
    assert s.console_port == 4000
    assert s.server == ["redis://redis-a:6379"]
    assert s.tracing == "console"

def test_tracing_choice_is_validated():
    with pytest.raises(SystemExit):
        _build_cli().parse_args(["run", "pkg", "--tracing", "zipkin"])
