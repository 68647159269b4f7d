# --- test import path bootstrap (flat layout) ---
import sys as _sys
from pathlib import Path as _Path

_ROOT = _Path(__file__).resolve().parents[1]
if str(_ROOT) not in _sys.path:
    _sys.path.insert(0, str(_ROOT))
# --- end bootstrap ---

import json
from pathlib import Path

import pytest

from ewbf_exporter import ExporterConfig


def make_stats(devices=None, error="", start_time=1000, **extra):
    payload = {
        "method": "getstat",
        "error": error,
        "start_time": start_time,
        "current_server": "zec-eu1.nanopool.org:6666",
        "available_servers": 1,
        "server_status": 2,
        "result": devices if devices is not None else [],
    }
    payload.update(extra)
    return json.dumps(payload)


@pytest.fixture
def rig1_body() -> str:
    return make_stats(
        devices=[
            {"speed_sps": 100, "accepted_shares": 5, "rejected_shares": 1},
            {"speed_sps": 200, "accepted_shares": 3, "rejected_shares": 0},
        ],
    )


@pytest.fixture
def rig1_config() -> ExporterConfig:
    return ExporterConfig(api_url="http://miner.local:42000/getstat", miner_id="rig1")


@pytest.fixture
def fixture_file(tmp_path: Path, rig1_body: str) -> Path:
    path = tmp_path / "test.json"
    path.write_text(rig1_body, encoding="utf-8")
    return path
