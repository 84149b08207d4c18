import socket
import threading

import pytest

LOOPBACK = "127.0.0.1"


def _free_port(kind):
    with socket.socket(socket.AF_INET, kind) as s:
        s.bind((LOOPBACK, 0))
        return s.getsockname()[1]


@pytest.fixture
def tcp_listener():
    """A listening TCP socket on loopback; yields its port."""
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    srv.bind((LOOPBACK, 0))
    srv.listen(16)
    yield srv.getsockname()[1]
    srv.close()


@pytest.fixture
def closed_tcp_port():
    return _free_port(socket.SOCK_STREAM)


@pytest.fixture
def closed_udp_port():
    return _free_port(socket.SOCK_DGRAM)


@pytest.fixture
def udp_silent():
    """A bound UDP socket that never answers."""
    sink = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sink.bind((LOOPBACK, 0))
    yield sink.getsockname()[1]
    sink.close()


@pytest.fixture
def udp_echo():
    """A UDP service that echoes every datagram back."""
    srv = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    srv.bind((LOOPBACK, 0))
    srv.settimeout(0.1)
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                data, addr = srv.recvfrom(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            srv.sendto(data or b"pong", addr)

    worker = threading.Thread(target=serve, daemon=True)
    worker.start()
    yield srv.getsockname()[1]
    stop.set()
    worker.join(timeout=1)
    srv.close()


@pytest.fixture
def flask_app():
    from app import app, cache, limiter

    saved = {k: app.config.get(k) for k in ("TESTING", "ALLOW_PRIVATE_TARGETS", "SCAN_BATCH_SIZE", "SCAN_DEFAULT_TIMEOUT_MS")}
    app.config.update(TESTING=True, ALLOW_PRIVATE_TARGETS=True, SCAN_BATCH_SIZE=50)
    limiter.enabled = False
    cache.clear()
    yield app
    limiter.enabled = True
    app.config.update(saved)


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()
