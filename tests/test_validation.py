import io
import json
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from wsgiref.util import setup_testing_defaults

import pytest

from modproxy.errors import AthensError, Level, kind, ops
from modproxy.log import JSONFormatter, Logger
from modproxy.middleware import ROUTING_ARGS_KEY, log_entry_middleware
from modproxy.validation import ValidationResponse, new_validation_middleware, validate

ROUTES = [
    re.compile(r"/(?P<module>.+)/@v/list"),
    re.compile(r"/(?P<module>.+)/@v/(?P<version>[^/]+)\.info"),
]


def ok_app(environ, start_response):
    start_response("200 OK", [])
    return [b""]


def make_router(app):
    def router(environ, start_response):
        for pattern in ROUTES:
            match = pattern.fullmatch(environ["PATH_INFO"])
            if match:
                routed = {**environ, ROUTING_ARGS_KEY: ((), match.groupdict())}
                return app(routed, start_response)
        start_response("404 Not Found", [])
        return [b""]

    return router


def call(app, path):
    environ = {}
    setup_testing_defaults(environ)
    environ["PATH_INFO"] = path
    environ["REQUEST_METHOD"] = "GET"
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = int(status.split()[0])

    b"".join(app(environ, start_response))
    return captured["status"]


class HookState:
    def __init__(self):
        self.invoked = False
        self.params = {}
        self.content_type = ""
        self.code = 200
        self.body = b""
        self.url = ""


@pytest.fixture
def hook():
    state = HookState()

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            length = int(self.headers.get("Content-Length", 0))
            raw = self.rfile.read(length)
            state.invoked = True
            state.params = json.loads(raw)
            state.content_type = self.headers.get("Content-Type", "")
            self.send_response(state.code)
            self.send_header("Content-Length", str(len(state.body)))
            self.end_headers()
            self.wfile.write(state.body)

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    state.url = f"http://127.0.0.1:{server.server_address[1]}/"
    yield state
    server.shutdown()
    server.server_close()


def hook_app(url, logger=None):
    app = new_validation_middleware(url, timeout=5)(ok_app)
    if logger is not None:
        app = log_entry_middleware(logger)(app)
    return make_router(app)


def test_hook_on_list(hook):
    status = call(hook_app(hook.url), "/github.com/gomods/athens/@v/list")
    assert status == 200
    assert hook.invoked is False


def test_hook_pass(hook):
    hook.code = 200
    status = call(hook_app(hook.url), "/github.com/athens-artifacts/happy-path/@v/v1.0.0.info")
    assert hook.invoked is True
    assert status == 200
    assert hook.params == {
        "Module": "github.com/athens-artifacts/happy-path",
        "Version": "v1.0.0",
    }
    assert hook.content_type == "application/json"


def test_hook_blocks(hook):
    hook.code = 403
    status = call(hook_app(hook.url), "/github.com/athens-artifacts/happy-path/@v/v1.0.0.info")
    assert hook.invoked is True
    assert status == 403


def test_hook_unexpected_error(hook):
    hook.code = 410
    buf = io.StringIO()
    logger = Logger("", Level.DEBUG, out=buf)
    logger.formatter = JSONFormatter(disable_timestamp=True)
    status = call(
        hook_app(hook.url, logger), "/github.com/athens-artifacts/happy-path/@v/v1.0.0.info"
    )
    assert hook.invoked is True
    assert status == 500
    record = json.loads(buf.getvalue().splitlines()[0])
    assert record["level"] == "error"
    assert record["msg"] == "Unexpected status code "


def test_hook_message_is_logged(hook):
    hook.code = 403
    hook.body = b"blocked"
    buf = io.StringIO()
    logger = Logger("", Level.DEBUG, out=buf)
    logger.formatter = JSONFormatter(disable_timestamp=True)
    status = call(
        hook_app(hook.url, logger), "/github.com/athens-artifacts/happy-path/@v/v1.0.0.info"
    )
    assert status == 403
    record = json.loads(buf.getvalue().splitlines()[0])
    assert record["level"] == "warning"
    assert record["msg"] == (
        "error validating github.com/athens-artifacts/happy-path@v1.0.0 blocked"
    )


def test_validate_valid(hook):
    hook.code = 200
    hook.body = b"fine"
    assert validate(hook.url, "mod", "v1.0.0", timeout=5) == ValidationResponse(True, b"fine")


def test_validate_forbidden(hook):
    hook.code = 403
    hook.body = b"nope"
    assert validate(hook.url, "mod", "v1.0.0", timeout=5) == ValidationResponse(False, b"nope")


def test_validate_unexpected_status_kind(hook):
    hook.code = 410
    with pytest.raises(AthensError) as info:
        validate(hook.url, "mod", "v1.0.0", timeout=5)
    assert kind(info.value) == 410
    assert str(info.value) == "Unexpected status code "