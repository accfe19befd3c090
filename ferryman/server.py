"""Threaded HTTP server and request handler for Ferryman."""

from __future__ import annotations

import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import TYPE_CHECKING, Any

from .logger import get_logger
from .pipeline import ProxyPipeline, ProxyRequest, ProxyResponse

if TYPE_CHECKING:
    from .proxy import ContentProxy

logger = get_logger("server")

_INTERNAL_ERROR_BODY = b'{"error": "Internal server error", "code": "InternalError"}'
_MAX_LINE = 65537


class ThreadedHTTPServer(ThreadingHTTPServer):
    """Thread-per-request HTTP server bound to one proxy service."""

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address: tuple[str, int], RequestHandlerClass: Any, proxy_instance: ContentProxy):
        self.proxy_instance = proxy_instance

        def handler(*args: Any, **kwargs: Any) -> BaseHTTPRequestHandler:
            return RequestHandlerClass(*args, proxy_instance=proxy_instance, **kwargs)

        super().__init__(server_address, handler)
        self._run_thread: threading.Thread | None = None

    def start(self, blocking: bool = True) -> None:
        if blocking:
            logger.info("Starting server in blocking mode...")
            self.serve_forever()
        else:
            logger.info("Starting server in non-blocking mode...")
            self._run_thread = threading.Thread(target=self.serve_forever, name="ferryman-server", daemon=True)
            self._run_thread.start()
        logger.info("Server started.")

    def stop(self) -> None:
        logger.info("Stopping server...")
        self.shutdown()
        self.server_close()
        if self._run_thread:
            self._run_thread.join()
            self._run_thread = None
        logger.info("Server stopped.")


class ProxyRequestHandler(BaseHTTPRequestHandler):
    """Translates wire requests into pipeline requests and back."""

    protocol_version = "HTTP/1.1"
    server_version = "ferryman"

    def __init__(self, *args: Any, proxy_instance: ContentProxy, **kwargs: Any) -> None:
        self.proxy = proxy_instance
        super().__init__(*args, **kwargs)

    @property
    def pipeline(self) -> ProxyPipeline:
        return self.proxy.pipeline

    def do_GET(self) -> None:
        self._dispatch()

    def do_HEAD(self) -> None:
        self._dispatch()

    def do_OPTIONS(self) -> None:
        self._dispatch()

    def do_POST(self) -> None:
        self._dispatch()

    def do_PUT(self) -> None:
        self._dispatch()

    def do_PATCH(self) -> None:
        self._dispatch()

    def do_DELETE(self) -> None:
        self._dispatch()

    def _dispatch(self) -> None:
        try:
            self._discard_request_body()
            request = ProxyRequest.from_target(
                self.command,
                self.path,
                headers=list(self.headers.items()),
                client_ip=self.client_address[0] if self.client_address else None,
            )
            response = self.pipeline.handle(request)
        except Exception:
            logger.exception("Unhandled error serving %s %s", self.command, self.path)
            self.close_connection = True
            response = ProxyResponse(
                status=500,
                headers=[("Content-Type", "application/json; charset=utf-8")],
                body=_INTERNAL_ERROR_BODY,
            )
        self._write(response)

    def _discard_request_body(self) -> None:
        """Consume the request body so the next keep-alive request parses cleanly."""
        encoding = (self.headers.get("Transfer-Encoding") or "").lower()
        if encoding:
            if encoding.rsplit(",", 1)[-1].strip() != "chunked" or not self._drain_chunked():
                # No way to find where this body ends
                self.close_connection = True
            return
        length = int(self.headers.get("Content-Length") or 0)
        if length > 0:
            self.rfile.read(length)

    def _drain_chunked(self) -> bool:
        while True:
            line = self.rfile.readline(_MAX_LINE)
            try:
                size = int(line.split(b";", 1)[0].strip(), 16)
            except ValueError:
                return False
            if size == 0:
                break
            self.rfile.read(size + 2)
        # Trailer section ends with an empty line
        while True:
            line = self.rfile.readline(_MAX_LINE)
            if line in (b"\r\n", b"\n"):
                return True
            if not line:
                return False

    def _write(self, response: ProxyResponse) -> None:
        self.send_response(response.status)
        for name, value in response.headers:
            self.send_header(name, value)
        if response.status not in (204, 304):
            length = response.content_length
            if length is None and (response.body or self.command != "HEAD"):
                length = len(response.body)
            if length is not None:
                self.send_header("Content-Length", str(length))
        if self.close_connection:
            self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD" and response.body:
            self.wfile.write(response.body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)
