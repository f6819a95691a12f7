from __future__ import annotations

import pytest
from fastapi import FastAPI

from bidscout_api.core.config import Settings
from bidscout_api.core.telemetry import (
    _parse_headers,
    resolve_exporter_endpoint,
    setup_api_telemetry,
    shutdown_api_telemetry,
)


def test_parse_headers_skips_malformed_pairs() -> None:
    assert _parse_headers("authorization=Bearer abc, x-team = ops,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "ops",
    }
    assert _parse_headers(None) == {}


def test_exporter_endpoint_prefers_settings_then_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://collector:4318")

    assert resolve_exporter_endpoint(Settings(otel_exporter_otlp_endpoint="http://explicit:4318")) == "http://explicit:4318"
    assert resolve_exporter_endpoint(Settings()) == "http://collector:4318"

    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    assert resolve_exporter_endpoint(Settings()) is None


def test_disabled_telemetry_leaves_app_uninstrumented() -> None:
    app = FastAPI()

    runtime = setup_api_telemetry(app, Settings(otel_enabled=False))

    assert runtime.enabled is False
    assert runtime.provider is None
    shutdown_api_telemetry(app, runtime)
