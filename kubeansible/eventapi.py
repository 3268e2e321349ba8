"""HTTP receiver for ansible-runner events, served on a Unix socket."""

from __future__ import annotations

import json
import logging
import os
import queue
import socketserver
import threading
from collections.abc import Iterator
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler
from urllib.parse import urlsplit

from .events import JobEvent

log = logging.getLogger(__name__)

URL_PATH = "/events/"
EVENT_BUFFER_SIZE = 1000

_PUT_TIMEOUT = 10.0
_POLL_INTERVAL = 0.05
_NOT_FOUND = b"404 page not found\n"
_BAD_CONTENT_TYPE = b'The content-type must be "application/json"'
_BAD_BODY = b"Could not deserialize body as JSON"


class _Handler(BaseHTTPRequestHandler):
    def _dispatch(self) -> None:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            self.send_error(HTTPStatus.BAD_REQUEST)
            return
        body = self.rfile.read(length) if length > 0 else b""
        status, payload = self.server.receiver.handle(
            self.command,
            urlsplit(self.path).path,
            self.headers.get("Content-Type", ""),
            body,
        )
        self.send_response(status)
        if payload:
            self.send_header("Content-Type", "text/plain; charset=utf-8")
        if status != HTTPStatus.NO_CONTENT:
            self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        if payload:
            self.wfile.write(payload)

    do_GET = do_POST = do_PUT = do_PATCH = do_DELETE = _dispatch

    def log_message(self, fmt, *args) -> None:
        log.debug(fmt, *args)


class _Server(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(self, path: str, receiver: EventReceiver) -> None:
        self.receiver = receiver
        super().__init__(path, _Handler)


class EventReceiver:
    """Serves the event API and collects the job events it receives.

    Iterating over the receiver yields events until it is closed and drained.
    """

    def __init__(self, ident: str, socket_dir: str = "/tmp") -> None:
        self.ident = ident
        self.socket_path = os.path.join(socket_dir, f"ansibleoperator-{ident}")
        self.url_path = URL_PATH
        self.events: queue.Queue[JobEvent] = queue.Queue(maxsize=EVENT_BUFFER_SIZE)
        self._lock = threading.Lock()
        self._stopped = False
        self._error: BaseException | None = None
        self._server = _Server(self.socket_path, self)
        self._thread = threading.Thread(
            target=self._serve, name=f"eventapi-{ident}", daemon=True
        )
        self._thread.start()

    def _serve(self) -> None:
        try:
            self._server.serve_forever()
        except BaseException as exc:  # reported through wait()
            self._error = exc

    def handle(self, method: str, path: str, content_type: str, body) -> tuple[int, bytes]:
        """Process one request and return the response status and body."""
        if path != self.url_path:
            log.info("Path not found: %s (job %s)", path, self.ident)
            return HTTPStatus.NOT_FOUND, _NOT_FOUND
        if method != "POST":
            log.info("Method not allowed: %s (job %s)", method, self.ident)
            return HTTPStatus.METHOD_NOT_ALLOWED, b""
        if content_type.split(";")[0] != "application/json":
            log.info("Wrong content type: %s (job %s)", content_type, self.ident)
            return HTTPStatus.UNSUPPORTED_MEDIA_TYPE, _BAD_CONTENT_TYPE
        try:
            event = JobEvent.from_dict(json.loads(body))
        except (ValueError, TypeError) as exc:
            log.info("Could not deserialize body (job %s): %s", self.ident, exc)
            return HTTPStatus.BAD_REQUEST, _BAD_BODY

        with self._lock:
            if self._stopped:
                log.info("Stopped and not accepting additional events for job %s", self.ident)
                return HTTPStatus.GONE, b""
            # Status events from ansible-runner carry no uuid and are not of interest.
            if not event.uuid:
                log.debug("Dropping event that is not a JobEvent (job %s)", self.ident)
            else:
                try:
                    self.events.put(event, timeout=_PUT_TIMEOUT)
                except queue.Full:
                    log.info("Timed out writing event to queue (job %s)", self.ident)
                    return HTTPStatus.INTERNAL_SERVER_ERROR, b""
        return HTTPStatus.NO_CONTENT, b""

    def close(self) -> None:
        """Stop accepting events, shut the server down and remove the socket."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        log.debug("Event API stopped (job %s)", self.ident)
        self._server.shutdown()
        self._server.server_close()
        try:
            os.remove(self.socket_path)
        except OSError:
            pass

    def wait(self, timeout: float | None = None) -> BaseException | None:
        """Wait for the server to finish; return the error it failed with, if any."""
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TimeoutError("event API server is still running")
        return self._error

    def __iter__(self) -> Iterator[JobEvent]:
        while True:
            try:
                event = self.events.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._stopped and self.events.empty():
                    return
                continue
            yield event

    def __enter__(self) -> EventReceiver:
        return self

    def __exit__(self, *args) -> None:
        self.close()