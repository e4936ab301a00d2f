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
Host-side port exposure: forwards TCP connections from a host port to the
socket a container listens on at its private address.
"""
import socket
import threading
from typing import List, Optional

from ..UTILS.errors import NetworkBindFailure
from ..UTILS.logging import get_logger

logger = get_logger(__name__)

BUFFER_SIZE = 65536


class PortProxy:
    """
    Accepts connections on ``listen_host:host_port`` and pipes each one to
    ``target_host:target_port`` on background threads.
    """

    def __init__(self, listen_host: str, host_port: int, target_host: str, target_port: int,
                 connect_timeout: float = 5.0):
        """
        :param listen_host: Host address to expose the port on.
        :param host_port: Host port.
        :param target_host: Container address.
        :param target_port: Port the container listens on.
        :param connect_timeout: Seconds to wait for the container side.
        """
        self.listen_host = listen_host
        self.host_port = host_port
        self.target_host = target_host
        self.target_port = target_port
        self.connect_timeout = connect_timeout
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._server: Optional[socket.socket] = None
        self._connections: List[socket.socket] = []
        self._lock = threading.Lock()

    def bind(self):
        """
        Reserves the host port without accepting yet.

        :raises NetworkBindFailure: If the port is already in use.
        """
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server.bind((self.listen_host, self.host_port))
            server.listen(64)
        except OSError as e:
            server.close()
            raise NetworkBindFailure(self.host_port, self.listen_host, reason=e.strerror or str(e))
        self._server = server
        logger.debug("Bound %s:%d for %s:%d", self.listen_host, self.host_port,
                     self.target_host, self.target_port)

    def start(self):
        """
        Starts forwarding, binding first if needed.
        """
        if self._server is None:
            self.bind()
        self.running = True
        self.thread = threading.Thread(target=self._accept_loop, daemon=True,
                                       name=f"proxy-{self.host_port}")
        self.thread.start()

    def stop(self):
        """
        Closes the host port and every open connection.
        """
        self.running = False
        if self._server is not None:
            try:
                self._server.shutdown(socket.SHUT_RDWR)
            except OSError:
                # not connected, nothing to shut down
                pass
            self._server.close()
            self._server = None
        with self._lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        if self.thread:
            self.thread.join(timeout=1)
            self.thread = None

    def _accept_loop(self):
        server = self._server
        while self.running and server is not None:
            try:
                client, _ = server.accept()
            except OSError:
                break
            threading.Thread(target=self._handle, args=(client,), daemon=True).start()

    def _handle(self, client: socket.socket):
        try:
            upstream = socket.create_connection((self.target_host, self.target_port),
                                                timeout=self.connect_timeout)
        except OSError as e:
            logger.debug("Container %s:%d unreachable: %s", self.target_host, self.target_port, e)
            client.close()
            return
        upstream.settimeout(None)
        with self._lock:
            self._connections.extend([client, upstream])
        reverse = threading.Thread(target=self._pipe, args=(upstream, client), daemon=True)
        reverse.start()
        self._pipe(client, upstream)
        reverse.join()
        for conn in (client, upstream):
            self._release(conn)

    def _pipe(self, source: socket.socket, sink: socket.socket):
        try:
            while True:
                data = source.recv(BUFFER_SIZE)
                if not data:
                    break
                sink.sendall(data)
        except OSError:
            # peer closed
            pass
        finally:
            try:
                sink.shutdown(socket.SHUT_WR)
            except OSError:
                pass

    def _release(self, conn: socket.socket):
        with self._lock:
            if conn in self._connections:
                self._connections.remove(conn)
        conn.close()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()
