"""
Prometheus exporter for the EWBF Equihash CUDA miner.

Every scrape of /metrics polls the miner's JSON statistics API once, sums the
per-GPU counters and answers with plaintext exposition lines. Upstream
failures are reported through ewbf_up and never through the HTTP status.
"""
import json
import os
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import requests
from prometheus_client import CONTENT_TYPE_LATEST

__version__ = "0.1.0"

# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_EXPORTER_PORT = 9207
DEFAULT_FIXTURE_PATH = "test.json"

# Metric names, in the order they are rendered
METRIC_UP = "ewbf_up"
METRIC_START_TIME = "ewbf_start_time"
METRIC_SPEED_SPS = "ewbf_speed_sps"
METRIC_ACCEPTED_SHARES = "ewbf_accepted_shares"
METRIC_REJECTED_SHARES = "ewbf_rejected_shares"

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


@dataclass(frozen=True)
class ExporterConfig:
    """Settings read once at startup and shared read-only by every scrape."""
    api_url: str = ""
    miner_id: str = ""
    test_mode: bool = False
    exporter_port: int = DEFAULT_EXPORTER_PORT
    fixture_path: str = DEFAULT_FIXTURE_PATH

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ExporterConfig":
        """
        Build the configuration from API_URL, MINER_ID, TEST_MODE and
        EXPORTER_PORT. Raises SystemExit if EXPORTER_PORT is not an integer.
        """
        env = os.environ if environ is None else environ

        port_raw = (env.get("EXPORTER_PORT", "") or "").strip()
        if port_raw:
            try:
                exporter_port = int(port_raw)
            except ValueError:
                raise SystemExit(f"EXPORTER_PORT must be an integer, got {port_raw!r}")
        else:
            exporter_port = DEFAULT_EXPORTER_PORT

        return cls(
            api_url=(env.get("API_URL", "") or "").strip(),
            miner_id=env.get("MINER_ID", "") or "",
            test_mode=env.get("TEST_MODE", "") == "1",
            exporter_port=exporter_port,
        )


def validate_configuration(config: ExporterConfig) -> None:
    """Validate configuration values and raise SystemExit on error."""
    errors: List[str] = []

    if not config.test_mode:
        if not config.api_url:
            errors.append("API_URL must be set unless TEST_MODE=1")
        elif urlsplit(config.api_url).scheme not in ("http", "https"):
            errors.append(f"API_URL must be an http(s) URL, got {config.api_url!r}")

    if not (1 <= config.exporter_port <= 65535):
        errors.append(f"EXPORTER_PORT must be between 1 and 65535, got {config.exporter_port}")

    if errors:
        raise SystemExit("Configuration errors:\n  " + "\n  ".join(errors))

# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass
class DeviceRecord:
    """One entry of the miner's "result" list (one GPU)."""
    gpu_id: int = 0
    cuda_id: int = 0
    bus_id: str = ""
    name: str = ""
    gpu_status: int = 0
    solver: int = 0
    temperature: int = 0
    gpu_power_usage: int = 0
    speed_sps: int = 0
    accepted_shares: int = 0
    rejected_shares: int = 0
    start_time: int = 0


@dataclass
class StatisticsRecord:
    """Decoded getstat response. The default instance is the zero-value record."""
    method: str = ""
    error: str = ""
    start_time: int = 0
    current_server: str = ""
    available_servers: int = 0
    server_status: int = 0
    devices: List[DeviceRecord] = field(default_factory=list)


@dataclass
class AggregateResult:
    up: int = 0
    start_time: int = 0
    total_speed: int = 0
    total_accepted: int = 0
    total_rejected: int = 0

# =============================================================================
# FETCH FUNCTIONS
# =============================================================================

class SourceError(Exception):
    """The miner API answered with a status other than 200."""


def query_data(url: str) -> str:
    """
    Perform a single GET against the miner API and return the body.
    Raises requests.RequestException on network failure and SourceError on
    a non-200 status.
    """
    with requests.get(url) as response:
        if response.status_code != 200:
            raise SourceError(f"HTTP returned code {response.status_code}")
        return response.text


def get_test_data(path: str = DEFAULT_FIXTURE_PATH) -> str:
    """
    Read the fixture file used in test mode. Raises OSError if unreadable.
    Bytes that are not valid UTF-8 are replaced rather than rejected.
    """
    with open(path, "rb") as fh:
        return fh.read().decode("utf-8", errors="replace")


def fetch_statistics(config: ExporterConfig) -> Tuple[str, Optional[Exception]]:
    """
    Fetch raw statistics from the fixture (test mode) or the miner API.
    Returns (body, None) on success or ("", error) on failure.
    """
    try:
        if config.test_mode:
            return get_test_data(config.fixture_path), None
        return query_data(config.api_url), None
    except (requests.RequestException, SourceError, OSError) as exc:
        return "", exc

# =============================================================================
# DECODE FUNCTIONS
# =============================================================================

def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def _fold_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    # Keys match case-insensitively; a later duplicate wins
    return {key.lower(): value for key, value in data.items()}


def _int_field(data: Dict[str, Any], key: str) -> int:
    # Floats, booleans and out-of-range integers are type mismatches
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    if not (INT64_MIN <= value <= INT64_MAX):
        return 0
    return value


def _str_field(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) else ""


def decode_device(data: Any) -> DeviceRecord:
    if not isinstance(data, dict):
        return DeviceRecord()
    data = _fold_keys(data)
    return DeviceRecord(
        gpu_id=_int_field(data, "gpuid"),
        cuda_id=_int_field(data, "cudaid"),
        bus_id=_str_field(data, "busid"),
        name=_str_field(data, "name"),
        gpu_status=_int_field(data, "gpu_status"),
        solver=_int_field(data, "solver"),
        temperature=_int_field(data, "temperature"),
        gpu_power_usage=_int_field(data, "gpu_power_usage"),
        speed_sps=_int_field(data, "speed_sps"),
        accepted_shares=_int_field(data, "accepted_shares"),
        rejected_shares=_int_field(data, "rejected_shares"),
        start_time=_int_field(data, "start_time"),
    )


def try_decode_statistics(raw: str) -> Optional[StatisticsRecord]:
    """
    Decode the miner's JSON statistics, or return None if the body is empty,
    not valid JSON, or not a JSON object.

    Keys match case-insensitively. Missing fields keep their zero value,
    unknown fields are ignored and a field of the wrong JSON type is skipped
    without discarding the rest. NaN and Infinity are not JSON.
    """
    if not raw:
        return None
    try:
        data = json.loads(raw, parse_constant=_reject_constant)
    except (ValueError, RecursionError):
        return None
    if not isinstance(data, dict):
        return None
    data = _fold_keys(data)

    result = data.get("result")
    devices = [decode_device(entry) for entry in result] if isinstance(result, list) else []

    return StatisticsRecord(
        method=_str_field(data, "method"),
        error=_str_field(data, "error"),
        start_time=_int_field(data, "start_time"),
        current_server=_str_field(data, "current_server"),
        available_servers=_int_field(data, "available_servers"),
        server_status=_int_field(data, "server_status"),
        devices=devices,
    )


def decode_statistics(raw: str) -> StatisticsRecord:
    """Best-effort decode: never raises, undecodable input gives the zero-value record."""
    record = try_decode_statistics(raw)
    return record if record is not None else StatisticsRecord()

# =============================================================================
# AGGREGATE FUNCTIONS
# =============================================================================

def aggregate_devices(record: StatisticsRecord) -> Tuple[int, int, int]:
    """
    Sum speed, accepted shares and rejected shares over all GPUs.
    Returns (0, 0, 0) when no GPUs are reported.
    """
    total_speed = 0
    total_accepted = 0
    total_rejected = 0
    for device in record.devices:
        total_speed += device.speed_sps
        total_accepted += device.accepted_shares
        total_rejected += device.rejected_shares
    return total_speed, total_accepted, total_rejected

# =============================================================================
# FORMAT FUNCTIONS
# =============================================================================

def integer_to_string(value: int) -> str:
    return str(int(value))


def escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def format_labels(labels: Mapping[str, str]) -> str:
    return ",".join(f'{key}="{escape_label_value(value)}"' for key, value in labels.items())


def format_value(name: str, labels: Optional[Mapping[str, str]], value: str) -> str:
    """Render one exposition line: name{k="v",...} value, newline-terminated."""
    line = name
    if labels:
        line += "{" + format_labels(labels) + "}"
    return f"{line} {value}\n"


def render_metrics(result: AggregateResult, miner_id: str) -> str:
    labels = {"miner": miner_id}
    values = [
        (METRIC_UP, result.up),
        (METRIC_START_TIME, result.start_time),
        (METRIC_SPEED_SPS, result.total_speed),
        (METRIC_ACCEPTED_SHARES, result.total_accepted),
        (METRIC_REJECTED_SHARES, result.total_rejected),
    ]
    return "".join(format_value(name, labels, integer_to_string(value)) for name, value in values)

# =============================================================================
# SCRAPE FUNCTIONS
# =============================================================================

Fetcher = Callable[[ExporterConfig], Tuple[str, Optional[Exception]]]


def scrape(config: ExporterConfig, fetch: Optional[Fetcher] = None) -> AggregateResult:
    """
    Run one fetch -> decode -> aggregate pass.

    Transport failures, an undecodable body and an upstream "error" message
    each mark the miner down; the remaining values then come from whatever
    was decoded, which is the zero-value record after a failed fetch.
    """
    fetch = fetch or fetch_statistics
    up = 1

    body, err = fetch(config)
    if err is not None:
        print(f"[ERROR] Failed to fetch miner statistics: {err}")
        up = 0

    record = try_decode_statistics(body)
    if record is None:
        if err is None:
            print("[ERROR] Failed to decode miner statistics")
            up = 0
        record = StatisticsRecord()

    if record.error:
        print(f"[WARN] Response error: {record.error}")
        up = 0

    total_speed, total_accepted, total_rejected = aggregate_devices(record)
    return AggregateResult(
        up=up,
        start_time=record.start_time,
        total_speed=total_speed,
        total_accepted=total_accepted,
        total_rejected=total_rejected,
    )


def collect_metrics(config: ExporterConfig, fetch: Optional[Fetcher] = None) -> str:
    return render_metrics(scrape(config, fetch), config.miner_id)

# =============================================================================
# HTTP SERVER
# =============================================================================

INDEX_HTML = """<!doctype html>
<html>
    <head>
        <meta charset="utf-8">
        <title>EWBF Exporter</title>
    </head>
    <body>
        <h1>EWBF Exporter</h1>
        <p><a href="/metrics">Metrics</a></p>
    </body>
</html>"""


class ExporterServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, server_address: Tuple[str, int], config: ExporterConfig):
        self.config = config
        super().__init__(server_address, ExporterHandler)


class ExporterHandler(BaseHTTPRequestHandler):
    server: ExporterServer

    def do_GET(self):
        path = urlsplit(self.path).path
        if path == "/metrics":
            self.handle_metrics()
        else:
            self.handle_index()

    def do_HEAD(self):
        self.do_GET()

    def log_message(self, fmt, *args):
        return

    def handle_metrics(self):
        print("[INFO] Serving /metrics")
        body = collect_metrics(self.server.config)
        self._send(body, CONTENT_TYPE_LATEST)

    def handle_index(self):
        print("[INFO] Serving /index")
        self._send(INDEX_HTML, "text/html; charset=utf-8")

    def _send(self, body: str, content_type: str):
        data = body.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(data)

# =============================================================================
# MAIN
# =============================================================================

def main():
    """
    Read the configuration and serve /metrics until interrupted.
    """
    config = ExporterConfig.from_env()
    validate_configuration(config)

    print("=" * 70)
    print(f"EWBF Prometheus Exporter v{__version__}")
    print("=" * 70)
    print("Configuration:")
    if config.test_mode:
        print(f"  TEST_MODE: enabled (fixture {config.fixture_path})")
    print(f"  API_URL: {config.api_url}")
    print(f"  MINER_ID: {config.miner_id}")
    print(f"  EXPORTER_PORT: {config.exporter_port}")
    print("=" * 70)

    server = ExporterServer(("", config.exporter_port), config)
    print(f"[INFO] EWBF exporter listening on :{config.exporter_port}")
    print(f"[INFO] Metrics available at http://localhost:{config.exporter_port}/metrics")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("[INFO] Keyboard interrupt received, shutting down")
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
