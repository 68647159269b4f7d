import threading

import pytest
import requests

from ewbf_exporter import ExporterConfig, ExporterServer


@pytest.fixture
def serve():
    servers = []

    def _serve(config: ExporterConfig) -> str:
        server = ExporterServer(("127.0.0.1", 0), config)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        servers.append((server, thread))
        host, port = server.server_address[:2]
        return f"http://{host}:{port}"

    yield _serve

    for server, thread in servers:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


def test_metrics_endpoint_serves_fixture(serve, fixture_file):
    base = serve(ExporterConfig(test_mode=True, miner_id="rig1", fixture_path=str(fixture_file)))
    response = requests.get(f"{base}/metrics", timeout=5)
    assert response.status_code == 200
    assert response.headers["Content-Type"].startswith("text/plain")
    assert response.text.splitlines() == [
        'ewbf_up{miner="rig1"} 1',
        'ewbf_start_time{miner="rig1"} 1000',
        'ewbf_speed_sps{miner="rig1"} 300',
        'ewbf_accepted_shares{miner="rig1"} 8',
        'ewbf_rejected_shares{miner="rig1"} 1',
    ]


def test_metrics_endpoint_is_200_when_miner_unreachable(serve, tmp_path):
    config = ExporterConfig(test_mode=True, miner_id="rig1", fixture_path=str(tmp_path / "missing.json"))
    base = serve(config)
    response = requests.get(f"{base}/metrics?format=text", timeout=5)
    assert response.status_code == 200
    assert response.text.splitlines()[0] == 'ewbf_up{miner="rig1"} 0'
    assert all(line.endswith(" 0") for line in response.text.splitlines())


@pytest.mark.parametrize("path", ["/", "/index.html", "/anything"])
def test_other_paths_serve_index(serve, path):
    base = serve(ExporterConfig(test_mode=True, miner_id="rig1"))
    response = requests.get(f"{base}{path}", timeout=5)
    assert response.status_code == 200
    assert response.headers["Content-Type"].startswith("text/html")
    assert '<a href="/metrics">Metrics</a>' in response.text


def test_metrics_endpoint_is_200_for_undecodable_fixture_bytes(serve, tmp_path):
    path = tmp_path / "test.json"
    path.write_bytes(b'\xff\xfe{"start_time":1}')
    base = serve(ExporterConfig(test_mode=True, miner_id="rig1", fixture_path=str(path)))
    response = requests.get(f"{base}/metrics", timeout=5)
    assert response.status_code == 200
    assert response.text.splitlines()[0] == 'ewbf_up{miner="rig1"} 0'
    assert all(line.endswith(" 0") for line in response.text.splitlines())


@pytest.mark.parametrize("path", ["/metrics", "/"])
def test_head_is_answered_without_body(serve, fixture_file, path):
    base = serve(ExporterConfig(test_mode=True, miner_id="rig1", fixture_path=str(fixture_file)))
    response = requests.head(f"{base}{path}", timeout=5)
    assert response.status_code == 200
    assert int(response.headers["Content-Length"]) > 0
    assert response.content == b""
