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
Utilities for finding free ports and container addresses.
"""
import ipaddress
import random
import socket
from typing import Collection


def get_free_port(host: str = "127.0.0.1") -> int:
    """
    Finds a free port on the given host.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def is_port_free(port: int, host: str = "") -> bool:
    """
    Checks if a port can be bound on the given host.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return True
        except OSError:
            return False


def allocate_address(network: str, in_use: Collection[str] = ()) -> str:
    """
    Picks an unused host address from a loopback subnet.

    Each running container gets its own address so that its listening socket
    never collides with host-side port exposure.

    :param network: CIDR of the address pool, e.g. ``127.77.0.0/16``.
    :param in_use: Addresses already handed out.
    :return: Address as a string.
    """
    net = ipaddress.ip_network(network)
    if not net.is_loopback:
        raise ValueError(f"Container network must be a loopback subnet: {network}")
    # .0 and .1 of the pool are reserved
    first = int(net.network_address) + 2
    last = int(net.broadcast_address) - 1
    if last < first:
        raise ValueError(f"Container network too small: {network}")
    taken = set(in_use)
    for _ in range(64):
        candidate = str(ipaddress.ip_address(random.randint(first, last)))
        if candidate not in taken:
            return candidate
    for value in range(first, last + 1):
        candidate = str(ipaddress.ip_address(value))
        if candidate not in taken:
            return candidate
    raise RuntimeError(f"No free address left in {network}")
