from __future__ import annotations

import json
from pathlib import Path

import pytest

from appprof import cli
from appprof.config import ProfilerConfig
from appprof.errors import PackageNotFoundError
from appprof.grants import UINT64_MAX
from appprof.service import ProfilerService


class _DummyService:
    def __init__(self, status: int = 0) -> None:
        self.status = status
        self.calls: list[tuple[str, dict]] = []

    def prepare(self, app_name: str | None = None, days: int = 0) -> dict:
        self.calls.append(("prepare", {"app": app_name, "days": days}))
        if app_name == "com.missing":
            raise PackageNotFoundError("failed to find package com.missing", package=app_name)
        return {"app": app_name, "policy": "durable_grant", "tracepoints": 0}

    def collect(self, app_name: str | None, **kwargs: object) -> dict:
        self.calls.append(("collect", {"app": app_name, **kwargs}))
        return {"app": app_name, "output": kwargs["output_path"], "exit_status": self.status}

    def collect_in_app(self, **kwargs: object) -> dict:
        self.calls.append(("collect_in_app", dict(kwargs)))
        return {"entries": ["perf-1.data"], "bytes_read": 10, "skipped": [], "removed": True}


def test_prepare_prints_result(monkeypatch, capsys) -> None:  # type: ignore[no-untyped-def]
    service = _DummyService()
    monkeypatch.setattr(cli, "_service", lambda config_file=None: service)

    assert cli.main(["api-prepare", "--app", "com.foo", "--days", "3"]) == 0

    assert service.calls == [("prepare", {"app": "com.foo", "days": 3})]
    assert json.loads(capsys.readouterr().out)["policy"] == "durable_grant"


def test_prepare_accepts_largest_day_count(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service = _DummyService()
    monkeypatch.setattr(cli, "_service", lambda config_file=None: service)
    assert cli.main(["api-prepare", "--app", "com.foo", "--days", str(UINT64_MAX)]) == 0
    assert service.calls[0][1]["days"] == UINT64_MAX


@pytest.mark.parametrize("days", ["-1", "abc", "1.5", str(UINT64_MAX + 1), "١٢"])
def test_invalid_days_is_usage_error(monkeypatch, days: str) -> None:  # type: ignore[no-untyped-def]
    service = _DummyService()
    monkeypatch.setattr(cli, "_service", lambda config_file=None: service)
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["api-prepare", "--app", "com.foo", "--days", days])
    assert excinfo.value.code == 2
    assert service.calls == []


def test_prepare_failure_returns_one(monkeypatch, caplog) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(cli, "_service", lambda config_file=None: _DummyService())
    assert cli.main(["api-prepare", "--app", "com.missing", "--days", "1"]) == 1
    assert "package_not_found" in caplog.text


def test_collect_propagates_child_status(monkeypatch, capsys) -> None:  # type: ignore[no-untyped-def]
    service = _DummyService(status=143)
    monkeypatch.setattr(cli, "_service", lambda config_file=None: service)

    assert cli.main(["--log", "debug", "api-collect", "--app", "com.foo", "-o", "perf.zip"]) == 143

    name, kwargs = service.calls[0]
    assert name == "collect"
    assert kwargs["output_path"] == "perf.zip"
    assert kwargs["log_level"] == "debug"
    assert json.loads(capsys.readouterr().out)["exit_status"] == 143


def test_in_app_collect_routes_to_collector(monkeypatch, capsys) -> None:  # type: ignore[no-untyped-def]
    service = _DummyService()
    monkeypatch.setattr(cli, "_service", lambda config_file=None: service)

    argv = ["api-collect", "--app", "com.foo", "--in-app", "--out-fd", "5", "--stop-signal-fd", "6"]
    assert cli.main(argv) == 0

    assert service.calls == [("collect_in_app", {"output_fd": 5, "output_path": None, "stop_signal_fd": 6})]
    assert capsys.readouterr().out == ""


def test_collect_without_app_fails(monkeypatch, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    config = ProfilerConfig(default_output=str(tmp_path / "appprof_data.zip"), property_store="file", telemetry=False)
    monkeypatch.setattr(cli, "_service", lambda config_file=None: ProfilerService.create(config, home=tmp_path))

    assert cli.main(["api-collect"]) == 1
    assert not (tmp_path / "appprof_data.zip").exists()


def test_config_option_reaches_service_factory(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    seen: list[str | None] = []
    service = _DummyService()

    def _factory(config_file: str | None = None) -> _DummyService:
        seen.append(config_file)
        return service

    monkeypatch.setattr(cli, "_service", _factory)
    assert cli.main(["--config", "/data/local/tmp/appprof.yaml", "api-prepare"]) == 0
    assert seen == ["/data/local/tmp/appprof.yaml"]


def test_corrupt_property_store_exits_with_error_code(monkeypatch, tmp_path: Path, caplog) -> None:  # type: ignore[no-untyped-def]
    home = tmp_path / "home"
    properties = home / "state" / "properties.json"
    properties.parent.mkdir(parents=True)
    properties.write_text("{truncated", encoding="utf-8")
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        f"property_store: file\ntracepoint_events_path: {tmp_path / 'tracepoint_events'}\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("APPPROF_HOME", str(home))

    assert cli.main(["--config", str(config_file), "api-prepare", "--app", "com.foo", "--days", "1"]) == 1
    assert "invalid_config" in caplog.text
