from __future__ import annotations

import hashlib
import subprocess
import sys
from pathlib import Path


SCRIPT_PATH = Path(__file__).resolve().parents[2] / "scripts" / "bootstrap_module.py"


def _run_script(*args: str) -> str:
    completed = subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def test_bootstrap_script_emits_module_and_hashed_key() -> None:
    output = _run_script("--module-id", "worker-1", "--api-key", "secret-key", "--scope", "jobs:read")

    expected_hash = hashlib.sha256(b"secret-key").hexdigest()
    assert "insert into modules (module_id, name, enabled, scopes)" in output
    assert "values ('worker-1', 'worker-1', true, array['jobs:read']::text[])" in output
    assert f"select id, '{expected_hash}', true" in output
    assert "secret-key" not in output.replace(expected_hash, "")


def test_bootstrap_script_defaults_scopes_and_generates_key() -> None:
    output = _run_script("--module-id", "o'brien", "--name", "Scraper")

    assert "'o''brien'" in output
    assert "'matching:run'" in output
    assert "'matches:read'" in output
    assert "-- generated api key" in output
