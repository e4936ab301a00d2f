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
Models representing layers and the image manifests built from them.
"""
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..UTILS.hashing import canonical_json, sha256_bytes
from .instructions import Instruction

ROOT_USER = "root"


class FileEntry(BaseModel):
    """
    A regular file or symlink inside a layer.
    """
    model_config = ConfigDict(frozen=True)

    data: bytes = b""
    mode: int = 0o644
    owner: str = ROOT_USER
    link_target: Optional[str] = None

    @property
    def is_symlink(self) -> bool:
        return self.link_target is not None

    @property
    def digest(self) -> str:
        if self.is_symlink:
            return sha256_bytes(b"link:" + self.link_target.encode("utf-8"))
        return sha256_bytes(self.data)


class LayerDelta(BaseModel):
    """
    Filesystem changes introduced by one instruction. Paths are POSIX paths
    relative to ``/``.
    """
    model_config = ConfigDict(frozen=True)

    files: Dict[str, FileEntry] = Field(default_factory=dict)
    removed: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.files and not self.removed

    @property
    def size(self) -> int:
        return sum(len(entry.data) for entry in self.files.values())


class Layer(BaseModel):
    """
    An immutable filesystem delta chained to its parent by content hash.
    """
    model_config = ConfigDict(frozen=True)

    content_hash: str
    parent_hash: Optional[str] = None
    instruction: Instruction
    delta: LayerDelta = Field(default_factory=LayerDelta)
    payload_digest: str = ""
    size: int = 0


class ImageConfig(BaseModel):
    """
    Run metadata carried by a manifest.
    """
    model_config = ConfigDict(frozen=True)

    base_image: Optional[str] = None
    user: str = ROOT_USER
    workdir: str = "/"
    exposed_ports: Tuple[int, ...] = ()
    entrypoint: Tuple[str, ...] = ()


class ImageManifest(BaseModel):
    """
    Ordered layer references plus run metadata describing a runnable image.
    """
    model_config = ConfigDict(frozen=True)

    layers: Tuple[str, ...]
    config: ImageConfig = Field(default_factory=ImageConfig)
    history: Tuple[str, ...] = ()

    def to_bytes(self) -> bytes:
        return canonical_json(self.model_dump(mode="json"))

    @property
    def digest(self) -> str:
        """Deterministic manifest reference."""
        return sha256_bytes(self.to_bytes())

    @classmethod
    def from_bytes(cls, data: bytes) -> "ImageManifest":
        return cls.model_validate_json(data)

    @property
    def exposed_ports(self) -> List[int]:
        return list(self.config.exposed_ports)
