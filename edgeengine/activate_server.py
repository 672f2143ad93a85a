"""A small web form through which a user supplies activation attributes."""

from __future__ import annotations

import logging
import os
import threading
import urllib.parse
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import TYPE_CHECKING, Any, Mapping

import jinja2

if TYPE_CHECKING:
    from .activate import Activate

log = logging.getLogger(__name__)

ACTIVE_PAGE = "active.html.template"
SUCCESS_PAGE = "success.html.template"
FAILED_PAGE = "failed.html.template"


@dataclass
class PageResult:
    """An HTTP status and the body to send with it."""

    status: int
    body: str


def _first(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return str(value[0]) if value else ""
    return "" if value is None else str(value)


class ActivateServer:
    """Serves the activation form and activates with the submitted attributes."""

    def __init__(self, activate: Activate, listen: str, pages: str) -> None:
        self._activate = activate
        self.listen = listen
        self.pages = pages
        self._closed = threading.Event()
        self._server: ThreadingHTTPServer | None = None
        self._lock = threading.Lock()

    @property
    def address(self) -> tuple[str, int] | None:
        """The bound address while serving, otherwise None."""
        with self._lock:
            return self._server.server_address[:2] if self._server is not None else None

    def _render(self, page: str, context: Mapping[str, Any]) -> PageResult:
        try:
            with open(os.path.join(self.pages, page), encoding="utf-8") as fh:
                template = jinja2.Template(fh.read(), autoescape=True)
            return PageResult(200, template.render(**context))
        except (OSError, jinja2.TemplateError) as exc:
            return PageResult(500, str(exc))

    def handle_view(self) -> PageResult:
        return self._render(ACTIVE_PAGE, {"Attributes": self._activate.config.attributes})

    def handle_update(self, method: str, form: Mapping[str, Any] | None) -> PageResult:
        """Store submitted attributes, activate, and render the success or failed page."""
        if method.upper() != "POST":
            return PageResult(405, "post only")
        if form is None:
            return PageResult(400, "missing form body")
        attributes = {}
        for attr in self._activate.config.attributes:
            value = _first(form.get(attr.name))
            attributes[attr.name] = value if value else attr.value
        log.info("active server attrs: %s", attributes)
        self._activate.attrs = attributes
        self._activate.activate()
        page = SUCCESS_PAGE if os.path.exists(self._activate.config.node_cert) else FAILED_PAGE
        return self._render(page, {})

    def _parse_listen(self) -> tuple[str, int]:
        host, sep, port = self.listen.rpartition(":")
        if not sep:
            raise ValueError(f"missing port in address {self.listen!r}")
        try:
            return host.strip("[]") or "0.0.0.0", int(port)
        except ValueError:
            raise ValueError(f"invalid port in address {self.listen!r}") from None

    def _handler(self) -> type[BaseHTTPRequestHandler]:
        server = self

        class Handler(BaseHTTPRequestHandler):
            def _send(self, result: PageResult) -> None:
                body = result.body.encode("utf-8")
                self.send_response(result.status)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def _route(self, method: str) -> None:
                path = urllib.parse.urlsplit(self.path).path
                if path != "/update":
                    self._send(server.handle_view())
                    return
                form = None
                if method == "POST":
                    length = int(self.headers.get("Content-Length") or 0)
                    raw = self.rfile.read(length).decode("utf-8") if length else ""
                    form = urllib.parse.parse_qs(raw, keep_blank_values=True)
                self._send(server.handle_update(method, form))

            def do_GET(self) -> None:
                self._route("GET")

            def do_POST(self) -> None:
                self._route("POST")

            def log_message(self, format: str, *args: Any) -> None:
                log.debug("active server: " + format, *args)

        return Handler

    def serve(self) -> None:
        """Serve requests until shutdown() is called."""
        host, port = self._parse_listen()
        httpd = ThreadingHTTPServer((host, port), self._handler())
        httpd.timeout = 0.1
        with self._lock:
            self._server = httpd
        try:
            while not self._closed.is_set():
                httpd.handle_request()
        finally:
            with self._lock:
                self._server = None
            httpd.server_close()

    def shutdown(self) -> None:
        self._closed.set()