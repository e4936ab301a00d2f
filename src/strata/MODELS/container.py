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
Models describing running containers and their port mappings.
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class PortMapping(BaseModel):
    """
    Publishes a container port on a host port.
    """
    host_port: int = Field(ge=1, le=65535)
    container_port: int = Field(ge=1, le=65535)

    @classmethod
    def parse(cls, text: str) -> "PortMapping":
        """
        Parses ``HOST:CONTAINER`` (or a single port used for both sides).

        :raises ValueError: If the text is malformed.
        """
        parts = text.split(":")
        if len(parts) == 1:
            parts = [parts[0], parts[0]]
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid port mapping '{text}', expected HOST:CONTAINER")
        return cls(host_port=int(parts[0]), container_port=int(parts[1]))

    def __str__(self) -> str:
        return f"{self.host_port}->{self.container_port}"


class RunningContainer(BaseModel):
    """
    A process started from a manifest. Never mutates the manifest or its layers.
    """
    id: str
    manifest_ref: str
    port_mapping: List[PortMapping] = []
    pid: int
    address: str
    rootfs: str
    interactive: bool = False
    log_file: Optional[str] = None
