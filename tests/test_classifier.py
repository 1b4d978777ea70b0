import pytest

from coordinator.classifier import EventKind, classify_server_line, classify_worker_line


@pytest.mark.parametrize("line", [
    "main: server is listening on http://0.0.0.0:8080 - starting the main loop",
    "main: HTTP server is listening, hostname: 0.0.0.0, port: 8080",
    "srv  init: server listening",
])
def test_server_ready(line):
    assert classify_server_line(line).kind == EventKind.READY


@pytest.mark.parametrize("line,kind,message", [
    ("main: loading model", EventKind.LOADING, "Loading model..."),
    ("llm_load_tensors: offloading 16 repeating layers", EventKind.LOADING_TENSORS, "Loading tensors..."),
    ("common_init_from_params: warming up the model with an empty run", EventKind.WARMING_UP,
     "Warming up model..."),
])
def test_server_loading(line, kind, message):
    event = classify_server_line(line)
    assert event.kind == kind
    assert event.message == message


def test_server_matching_is_case_sensitive():
    assert classify_server_line("LOADING MODEL") is None
    assert classify_server_line("Listening On port") is None


def test_server_unreachable_worker():
    event = classify_server_line("Failed to connect to 192.168.1.20:50052")
    assert event.kind == EventKind.WORKER_UNREACHABLE
    assert event.address == "192.168.1.20:50052"


def test_server_unrelated_line():
    assert classify_server_line("llama_model_loader: - kv 0: general.architecture str = llama") is None


@pytest.mark.parametrize("line,kind", [
    ("Accepted client connection, free_mem=8000000000", EventKind.CLIENT_CONNECTED),
    ("accepted connection from 192.168.1.2", EventKind.CLIENT_CONNECTED),
    ("Client connection closed", EventKind.CLIENT_DISCONNECTED),
    ("connection closed by peer", EventKind.CLIENT_DISCONNECTED),
    ("Starting RPC server v3.0.0", EventKind.READY),
    ("rpc-server LISTENING ON 0.0.0.0:50052", EventKind.READY),
])
def test_worker_lines(line, kind):
    assert classify_worker_line(line).kind == kind


def test_worker_unrelated_line():
    assert classify_worker_line("  endpoint       : 0.0.0.0:50052") is None
