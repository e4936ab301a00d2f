# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
The hello-world service shipped inside images.

Usage:
    from strata.SERVICE.app import start

    listener = start(3000)
    listener.serve_forever()

Or as an image entrypoint: ``CMD python -m strata.SERVICE.app``.
The service binds one socket on ``STRATA_BIND_ADDRESS`` (the container's own
address); reaching it from a host port is the runtime's job.
"""
import os
import socket
import threading
import time
from typing import Callable, Dict, Mapping, Optional, Tuple

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..UTILS.errors import NetworkBindFailure
from ..UTILS.logging import configure_logging, get_logger

logger = get_logger(__name__)

Handler = Callable[[], str]
RouteTable = Mapping[Tuple[str, str], Handler]

DEFAULT_PORT = 3000


def hello_world() -> str:
    return "Hello World!"


DEFAULT_ROUTES: Dict[Tuple[str, str], Handler] = {("GET", "/"): hello_world}


def create_app(routes: Optional[RouteTable] = None) -> FastAPI:
    """
    Builds the application for a route table.

    Args:
        routes: ``(method, path) -> handler`` where the handler returns the body.

    Returns:
        A FastAPI app answering 404 for every unmatched method or path.
    """
    app = FastAPI(title="strata service", docs_url=None, redoc_url=None, openapi_url=None)
    for (method, path), handler in (routes or DEFAULT_ROUTES).items():
        app.add_api_route(path, handler, methods=[method.upper()], response_class=PlainTextResponse)

    @app.exception_handler(StarletteHTTPException)
    async def not_found(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
        # a known path with another method is still an unmatched route
        if exc.status_code in (404, 405):
            return PlainTextResponse("Not Found", status_code=404)
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code)

    return app


class ListeningSocket:
    """
    One bound socket and the server that answers on it.
    """

    def __init__(self, sock: socket.socket, app: FastAPI):
        self.socket = sock
        self.app = app
        config = uvicorn.Config(app, log_config=None, access_log=False, lifespan="off")
        self.server = uvicorn.Server(config)
        self.thread: Optional[threading.Thread] = None

    @property
    def host(self) -> str:
        return self.socket.getsockname()[0]

    @property
    def port(self) -> int:
        return self.socket.getsockname()[1]

    def serve_forever(self):
        """Serves requests until ``shutdown`` is called or the process is signalled."""
        self.server.run(sockets=[self.socket])

    def serve_in_background(self, timeout: float = 5.0) -> "ListeningSocket":
        """
        Serves on a daemon thread and waits until requests are accepted.
        """
        self.thread = threading.Thread(target=self.serve_forever, daemon=True,
                                       name=f"service-{self.port}")
        self.thread.start()
        deadline = time.monotonic() + timeout
        while not self.server.started:
            if not self.thread.is_alive() or time.monotonic() > deadline:
                raise RuntimeError(f"service on port {self.port} failed to start")
            time.sleep(0.01)
        return self

    def shutdown(self):
        """Stops serving and closes the socket."""
        self.server.should_exit = True
        if self.thread:
            self.thread.join(timeout=5)
            self.thread = None
        self.socket.close()


def start(port: int, routes: Optional[RouteTable] = None, host: Optional[str] = None) -> ListeningSocket:
    """
    Binds exactly one listening socket and wraps it in a server.

    Args:
        port: Port to bind; 0 picks a free one.
        routes: Route table, ``DEFAULT_ROUTES`` when omitted.
        host: Address to bind, ``$STRATA_BIND_ADDRESS`` or all interfaces by default.

    Raises:
        NetworkBindFailure: If the port is in use or the address is unreachable.
    """
    if host is None:
        host = os.environ.get("STRATA_BIND_ADDRESS", "0.0.0.0")
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
        sock.listen(128)
    except OSError as e:
        sock.close()
        raise NetworkBindFailure(port, host, reason=e.strerror or str(e))
    return ListeningSocket(sock, create_app(routes))


def serve(port: Optional[int] = None, host: Optional[str] = None):
    """
    Blocking entrypoint: ``PORT`` and ``STRATA_BIND_ADDRESS`` fill in defaults.
    """
    if port is None:
        port = int(os.environ.get("PORT", DEFAULT_PORT))
    listener = start(port, host=host)
    logger.info("Listening on %s:%d", listener.host, listener.port)
    listener.serve_forever()


if __name__ == "__main__":
    configure_logging(os.environ.get("STRATA_LOG_LEVEL", "INFO"))
    serve()
