"""WSGI middleware for the module proxy.

Route parameters are read from ``environ["wsgiorg.routing_args"]``, which
the router sets before the middleware runs. The request context, holding
the request id and the log entry, travels in ``environ[CONTEXT_KEY]``.
"""

from __future__ import annotations

import html
import os
import sys
import uuid
from collections.abc import Callable, Iterable, Mapping
from http import HTTPStatus
from typing import Any

from modproxy.errors import AthensError
from modproxy.filter import Filter, FilterRule
from modproxy.log import Logger, entry_from_context, set_entry_in_context
from modproxy.paths import get_module, get_version
from modproxy.requestid import HEADER_KEY, from_context, set_in_context

__all__ = [
    "CONTEXT_KEY",
    "ROUTING_ARGS_KEY",
    "cache_control",
    "content_type",
    "new_filter_middleware",
    "log_entry_middleware",
    "request_logger",
    "fmt_response_code",
    "with_request_id",
]

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]
Middleware = Callable[[WSGIApp], WSGIApp]

CONTEXT_KEY = "modproxy.context"
"""Environ key holding the request context mapping."""

ROUTING_ARGS_KEY = "wsgiorg.routing_args"
"""Environ key holding ``(positional, named)`` route parameters."""

_REQUEST_ID_ENVIRON = "HTTP_" + HEADER_KEY.upper().replace("-", "_")


def _status_line(code: int) -> str:
    try:
        phrase = HTTPStatus(code).phrase
    except ValueError:
        phrase = ""
    return f"{code} {phrase}".rstrip()


def _request_context(environ: Mapping[str, Any]) -> dict[str, Any]:
    ctx = environ.get(CONTEXT_KEY)
    return dict(ctx) if isinstance(ctx, Mapping) else {}


def _route_vars(environ: Mapping[str, Any]) -> dict[str, str]:
    args = environ.get(ROUTING_ARGS_KEY)
    if isinstance(args, tuple) and len(args) == 2 and isinstance(args[1], Mapping):
        return {str(key): str(value) for key, value in args[1].items()}
    return {}


def _respond(
    start_response: Callable[..., Any],
    code: int,
    headers: Iterable[tuple[str, str]] = (),
    body: bytes = b"",
) -> list[bytes]:
    start_response(
        _status_line(code), [*headers, ("Content-Length", str(len(body)))]
    )
    return [body]


def _with_default_header(
    start_response: Callable[..., Any], name: str, value: str
) -> Callable[..., Any]:
    lowered = name.lower()

    def wrapped(status: str, headers: list[tuple[str, str]], exc_info: Any = None) -> Any:
        if not any(key.lower() == lowered for key, _ in headers):
            headers = [*headers, (name, value)]
        return start_response(status, headers, exc_info)

    return wrapped


def cache_control(cache_header_value: str) -> Middleware:
    """Return middleware that sets the Cache-Control header to the given value."""

    def middleware(app: WSGIApp) -> WSGIApp:
        def with_cache_control(environ: dict, start_response: Callable[..., Any]):
            return app(
                environ,
                _with_default_header(start_response, "Cache-Control", cache_header_value),
            )

        return with_cache_control

    return middleware


def content_type(app: WSGIApp) -> WSGIApp:
    """Wrap ``app`` so responses carry an application/json Content-Type."""

    def with_content_type(environ: dict, start_response: Callable[..., Any]):
        return app(
            environ,
            _with_default_header(start_response, "Content-Type", "application/json"),
        )

    return with_content_type


def _redirect(
    environ: Mapping[str, Any], start_response: Callable[..., Any], url: str
) -> list[bytes]:
    code = HTTPStatus.SEE_OTHER
    headers = [("Location", url)]
    body = b""
    if environ.get("REQUEST_METHOD", "GET") in ("GET", "HEAD"):
        headers.append(("Content-Type", "text/html; charset=utf-8"))
        body = f'<a href="{html.escape(url)}">{code.phrase}</a>.\n'.encode()
    return _respond(start_response, code, headers, body)


def new_filter_middleware(module_filter: Filter, upstream_endpoint: str) -> Middleware:
    """Return middleware applying ``module_filter`` to module requests.

    Excluded modules get 403, direct modules are redirected to the upstream
    proxy, and everything else, including requests that name no module,
    goes on to the wrapped application.
    """

    def middleware(app: WSGIApp) -> WSGIApp:
        def filtered(environ: dict, start_response: Callable[..., Any]):
            route = _route_vars(environ)
            try:
                mod = get_module(route)
            except AthensError:
                return app(environ, start_response)
            try:
                ver = get_version(route)
            except AthensError:
                ver = ""
            rule = module_filter.rule(mod, ver)
            if rule is FilterRule.EXCLUDE:
                return _respond(start_response, HTTPStatus.FORBIDDEN)
            if rule is FilterRule.DIRECT:
                url = upstream_endpoint.removesuffix("/") + environ.get("PATH_INFO", "")
                return _redirect(environ, start_response, url)
            return app(environ, start_response)

        return filtered

    return middleware


def log_entry_middleware(logger: Logger) -> Middleware:
    """Return middleware that stores a log entry with request fields in the context."""

    def middleware(app: WSGIApp) -> WSGIApp:
        def with_log_entry(environ: dict, start_response: Callable[..., Any]):
            ctx = _request_context(environ)
            entry = logger.with_fields(
                {
                    "http-method": environ.get("REQUEST_METHOD", ""),
                    "http-path": environ.get("PATH_INFO", ""),
                    "request-id": from_context(ctx),
                }
            )
            ctx = set_entry_in_context(ctx, entry)
            return app({**environ, CONTEXT_KEY: ctx}, start_response)

        return with_log_entry

    return middleware


def request_logger(app: WSGIApp) -> WSGIApp:
    """Wrap ``app`` to log each request with its response status. For development."""

    def logged(environ: dict, start_response: Callable[..., Any]):
        status_code = 0

        def capture(status: str, headers: list[tuple[str, str]], exc_info: Any = None) -> Any:
            nonlocal status_code
            try:
                status_code = int(status.split(None, 1)[0])
            except (ValueError, IndexError):
                status_code = 0
            return start_response(status, headers, exc_info)

        result = app(environ, capture)
        try:
            body = list(result)
        finally:
            close = getattr(result, "close", None)
            if close is not None:
                close()
        entry_from_context(_request_context(environ)).with_fields(
            {"http-status": fmt_response_code(status_code)}
        ).info("incoming request")
        return body

    return logged


def _color_enabled() -> bool:
    if "NO_COLOR" in os.environ or os.environ.get("TERM") == "dumb":
        return False
    isatty = getattr(sys.stdout, "isatty", None)
    return bool(isatty and isatty())


def fmt_response_code(status_code: int) -> str:
    """Return the status code as text, coloured by class when on a terminal.

    A status of 0 means nothing was written and is shown as 200.
    """
    if status_code == 0:
        status_code = 200
    text = str(status_code)
    if not _color_enabled():
        return text
    if status_code < HTTPStatus.BAD_REQUEST:
        code = 32
    elif status_code < HTTPStatus.INTERNAL_SERVER_ERROR:
        code = 93
    else:
        code = 91
    return f"\x1b[{code}m{text}\x1b[0m"


def with_request_id(app: WSGIApp) -> WSGIApp:
    """Wrap ``app`` so the context holds the request id header or a new one."""

    def identified(environ: dict, start_response: Callable[..., Any]):
        request_id = environ.get(_REQUEST_ID_ENVIRON, "")
        if not request_id:
            request_id = str(uuid.uuid4())
        ctx = set_in_context(_request_context(environ), request_id)
        return app({**environ, CONTEXT_KEY: ctx}, start_response)

    return identified