import io
import os
import threading
import time
import typing

import httpx
import pytest
from python_multipart import parse_form
from uvicorn.config import Config
from uvicorn.server import Server

ENVIRONMENT_VARIABLES = {
    "SSL_CERT_FILE",
    "SSL_CERT_DIR",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "ALL_PROXY",
    "NO_PROXY",
    "SSLKEYLOGFILE",
}


@pytest.fixture(scope="function", autouse=True)
def clean_environ():
    """Keeps os.environ clean for every test without having to mock os.environ"""
    original_environ = os.environ.copy()
    os.environ.clear()
    os.environ.update(
        {
            k: v
            for k, v in original_environ.items()
            if k not in ENVIRONMENT_VARIABLES and k.lower() not in ENVIRONMENT_VARIABLES
        }
    )
    yield
    os.environ.clear()
    os.environ.update(original_environ)


class ParsedForm(typing.NamedTuple):
    fields: typing.Dict[str, bytes]
    files: typing.Dict[str, typing.Tuple[typing.Optional[bytes], bytes]]
    order: typing.List[str]


def _parse_multipart(body: bytes, content_type: str) -> ParsedForm:
    fields: typing.Dict[str, bytes] = {}
    files: typing.Dict[str, typing.Tuple[typing.Optional[bytes], bytes]] = {}
    order: typing.List[str] = []

    def on_field(field) -> None:
        name = field.field_name.decode()
        fields[name] = field.value or b""
        order.append(name)

    def on_file(file) -> None:
        name = file.field_name.decode()
        file.file_object.seek(0)
        files[name] = (file.file_name, file.file_object.read())
        order.append(name)

    headers = {"Content-Type": content_type, "Content-Length": str(len(body))}
    parse_form(headers, io.BytesIO(body), on_field, on_file)
    return ParsedForm(fields, files, order)


@pytest.fixture
def parse_multipart() -> typing.Callable[[bytes, str], ParsedForm]:
    return _parse_multipart


Message = typing.Dict[str, typing.Any]
Receive = typing.Callable[[], typing.Awaitable[Message]]
Send = typing.Callable[
    [typing.Dict[str, typing.Any]], typing.Coroutine[None, None, None]
]
Scope = typing.Dict[str, typing.Any]


async def app(scope: Scope, receive: Receive, send: Send) -> None:
    assert scope["type"] == "http"
    if scope["path"].startswith("/status"):
        await status_code(scope, receive, send)
    elif scope["path"].startswith("/echo_body"):
        await echo_body(scope, receive, send)
    elif scope["path"].startswith("/redirect_307"):
        await redirect_307(scope, receive, send)
    elif scope["path"].startswith("/binary"):
        await binary(scope, receive, send)
    else:
        await hello_world(scope, receive, send)


async def hello_world(scope: Scope, receive: Receive, send: Send) -> None:
    await send(
        {
            "type": "http.response.start",
            "status": 200,
            "headers": [[b"content-type", b"text/plain"]],
        }
    )
    await send({"type": "http.response.body", "body": b"Hello, world!"})


async def status_code(scope: Scope, receive: Receive, send: Send) -> None:
    status_code = int(scope["path"].replace("/status/", ""))
    await send(
        {
            "type": "http.response.start",
            "status": status_code,
            "headers": [[b"content-type", b"text/plain"]],
        }
    )
    await send({"type": "http.response.body", "body": b"Hello, world!"})


async def binary(scope: Scope, receive: Receive, send: Send) -> None:
    await send(
        {
            "type": "http.response.start",
            "status": 200,
            "headers": [[b"content-type", b"application/octet-stream"]],
        }
    )
    await send({"type": "http.response.body", "body": bytes(range(256))})


async def echo_body(scope: Scope, receive: Receive, send: Send) -> None:
    """Echo the request body; request framing headers come back as x-echo-*."""
    body = b""
    more_body = True

    while more_body:
        message = await receive()
        body += message.get("body", b"")
        more_body = message.get("more_body", False)

    request_headers = dict(scope.get("headers", []))
    echoed = [[b"content-type", b"application/octet-stream"]]
    echoed.append([b"x-echo-method", scope["method"].encode()])
    for name in (b"content-type", b"content-length", b"transfer-encoding"):
        if name in request_headers:
            echoed.append([b"x-echo-" + name, request_headers[name]])

    await send({"type": "http.response.start", "status": 200, "headers": echoed})
    await send({"type": "http.response.body", "body": body})


async def redirect_307(scope: Scope, receive: Receive, send: Send) -> None:
    await send(
        {
            "type": "http.response.start",
            "status": 307,
            "headers": [[b"location", b"/echo_body"]],
        }
    )
    await send({"type": "http.response.body"})


class TestServer(Server):
    def install_signal_handlers(self) -> None:
        # Signal handlers can only be installed from the main thread.
        pass

    @property
    def url(self) -> httpx.URL:
        protocol = "https" if self.config.is_ssl else "http"
        port = self.servers[0].sockets[0].getsockname()[1]
        return httpx.URL(f"{protocol}://{self.config.host}:{port}/")


def serve_in_thread(server: TestServer) -> typing.Iterator[TestServer]:
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    try:
        deadline = time.monotonic() + 10
        while not server.started:
            if time.monotonic() > deadline:
                raise RuntimeError("Server failed to start within 10 seconds")
            time.sleep(1e-3)
        yield server
    finally:
        server.should_exit = True
        thread.join(timeout=5)


@pytest.fixture(scope="session")
def server() -> typing.Iterator[TestServer]:
    config = Config(app=app, lifespan="off", loop="asyncio", host="127.0.0.1", port=0)
    server = TestServer(config=config)
    yield from serve_in_thread(server)
