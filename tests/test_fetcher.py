import socket
import threading
import time
from contextlib import contextmanager

import httpx
import pytest

from speculum.errors import BodyTimeout, FetchError, HeaderTimeout
from speculum.fetcher import Fetcher, parse_retry_after


def make_fetcher(handler, **kwargs) -> Fetcher:
    return Fetcher(transport=httpx.MockTransport(handler), **kwargs)


def test_meta_available_before_body():
    def handler(request):
        if request.url.path == "/old":
            return httpx.Response(302, headers={"location": "/new"})
        return httpx.Response(200, headers={"content-type": "text/css"}, content=b"a{}")

    with make_fetcher(handler) as fetcher:
        stream = fetcher.open("http://example.com/old")
        assert stream.meta.final_url == "http://example.com/new"
        assert stream.meta.status == 200
        assert stream.meta.content_type == "text/css"
        assert b"".join(stream.iter_bytes()) == b"a{}"
        assert stream.bytes_read == 3


def test_error_status_is_reported_not_raised():
    def handler(request):
        return httpx.Response(404, content=b"gone")

    with make_fetcher(handler) as fetcher:
        with fetcher.open("http://example.com/x") as stream:
            assert stream.meta.status == 404


def test_transport_error_becomes_fetch_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with make_fetcher(handler) as fetcher:
        with pytest.raises(FetchError) as info:
            fetcher.open("http://example.com/")
    assert info.value.url == "http://example.com/"


def test_header_timeout():
    def handler(request):
        time.sleep(0.2)
        return httpx.Response(200, content=b"late")

    with make_fetcher(handler, header_timeout=0.05) as fetcher:
        with pytest.raises(HeaderTimeout):
            fetcher.open("http://example.com/")


def test_body_timeout():
    def slow_body():
        yield b"first"
        time.sleep(0.2)
        yield b"second"

    def handler(request):
        return httpx.Response(200, content=slow_body())

    with make_fetcher(handler, body_timeout=0.05) as fetcher:
        stream = fetcher.open("http://example.com/")
        with pytest.raises(BodyTimeout):
            for _ in stream.iter_bytes():
                pass


def test_parse_retry_after():
    assert parse_retry_after("5") == 5.0
    assert parse_retry_after("0") == 0.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("not a date") is None


@contextmanager
def stalling_server(first: bytes, rest: bytes, pause: float):
    """Local HTTP server that sends headers and `first`, waits `pause` seconds, then sends `rest`."""
    released = threading.Event()
    server = socket.create_server(("127.0.0.1", 0))
    port = server.getsockname()[1]

    def serve() -> None:
        conn, _ = server.accept()
        with conn:
            conn.recv(65536)
            head = (
                "HTTP/1.1 200 OK\r\nContent-Type: text/html\r\n"
                f"Content-Length: {len(first) + len(rest)}\r\nConnection: close\r\n\r\n"
            )
            try:
                conn.sendall(head.encode("ascii") + first)
                released.wait(pause)
                conn.sendall(rest)
            except OSError:
                pass

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{port}/"
    finally:
        released.set()
        thread.join(5)
        server.close()


def test_pause_within_body_timeout_is_not_a_header_timeout():
    with stalling_server(b"<p>", b"slow</p>", pause=1.0) as url:
        with Fetcher(header_timeout=0.3, body_timeout=5, transport=httpx.HTTPTransport()) as fetcher:
            stream = fetcher.open(url)
            assert b"".join(stream.iter_bytes()) == b"<p>slow</p>"


def test_stalled_body_aborted_at_body_timeout():
    with stalling_server(b"<p>", b"never</p>", pause=3.0) as url:
        with Fetcher(header_timeout=5, body_timeout=0.5, transport=httpx.HTTPTransport()) as fetcher:
            stream = fetcher.open(url)
            started = time.monotonic()
            with pytest.raises(BodyTimeout):
                for _ in stream.iter_bytes():
                    pass
            assert time.monotonic() - started < 1.5
