from __future__ import annotations

import pytest

from bidscout_workers.core.config import Settings
from bidscout_workers.core.telemetry import (
    _parse_headers,
    resolve_exporter_endpoint,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)


def test_parse_headers() -> None:
    assert _parse_headers("api-key=abc,team = ingest,novalue") == {"api-key": "abc", "team": "ingest"}
    assert _parse_headers("") == {}


def test_exporter_endpoint_falls_back_to_otel_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "http://collector:4318/v1/traces")

    assert resolve_exporter_endpoint(Settings()) == "http://collector:4318/v1/traces"
    assert resolve_exporter_endpoint(Settings(otel_exporter_otlp_endpoint="http://own:4318")) == "http://own:4318"

    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    assert resolve_exporter_endpoint(Settings()) is None


def test_disabled_worker_telemetry_is_inert() -> None:
    runtime = setup_worker_telemetry(Settings(otel_enabled=False))

    assert runtime.enabled is False
    assert runtime.exporting is False
    shutdown_worker_telemetry(runtime)
