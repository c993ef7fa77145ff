"""Middleware that asks an external webhook whether a module may be served."""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any

from modproxy.errors import AthensError, e
from modproxy.log import entry_from_context
from modproxy.middleware import (
    Middleware,
    WSGIApp,
    _request_context,
    _respond,
    _route_vars,
)
from modproxy.paths import get_module, get_version

__all__ = ["ValidationResponse", "validate", "new_validation_middleware"]


@dataclass(frozen=True)
class ValidationResponse:
    """The webhook's verdict and the message it sent along."""

    valid: bool
    message: bytes = b""


def validate(
    hook: str, mod: str, ver: str, timeout: float | None = None
) -> ValidationResponse:
    """POST ``mod`` and ``ver`` to ``hook`` and return its verdict.

    A 200 reply means valid and a 403 invalid; any other status raises an
    :class:`~modproxy.errors.AthensError` whose kind is that status.
    """
    op = "actions.validate"
    payload = json.dumps({"Module": mod, "Version": ver}, separators=(",", ":")).encode()
    request = urllib.request.Request(
        hook,
        data=payload,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            status = response.status
            body = response.read()
    except urllib.error.HTTPError as err:
        status = err.code
        try:
            body = err.read()
        finally:
            err.close()
    except (OSError, ValueError) as err:
        raise e(op, err) from err

    if status in (HTTPStatus.OK, HTTPStatus.FORBIDDEN):
        return ValidationResponse(valid=status == HTTPStatus.OK, message=body)
    raise e(op, "Unexpected status code ", int(status))


def new_validation_middleware(
    validator_hook: str, timeout: float | None = None
) -> Middleware:
    """Return middleware that checks module@version requests with ``validator_hook``.

    Requests without a version, such as version lists, are not checked.
    Rejected modules get 403; a failing hook gets 500.
    """

    def middleware(app: WSGIApp) -> WSGIApp:
        def validated(environ: dict, start_response: Callable[..., Any]):
            route = _route_vars(environ)
            try:
                mod = get_module(route)
            except AthensError:
                return app(environ, start_response)
            try:
                version = get_version(route)
            except AthensError:
                version = ""
            if version:
                entry = entry_from_context(_request_context(environ))
                try:
                    response = validate(validator_hook, mod, version, timeout)
                except AthensError as err:
                    entry.system_err(err)
                    return _respond(start_response, HTTPStatus.INTERNAL_SERVER_ERROR)
                if response.message:
                    message = response.message.decode("utf-8", errors="replace")
                    entry.warn("error validating %s@%s %s", mod, version, message)
                if not response.valid:
                    return _respond(start_response, HTTPStatus.FORBIDDEN)
            return app(environ, start_response)

        return validated

    return middleware