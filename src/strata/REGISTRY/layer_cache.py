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
Local layer cache.
Content-addressable storage for build layers, keyed by layer content hash.
"""

import fcntl
import io
import json
import os
import posixpath
import tarfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from ..MODELS.image import FileEntry, Layer, LayerDelta
from ..MODELS.instructions import parse_instruction
from ..UTILS.errors import LayerIntegrityError, MissingDependencyFailure
from ..UTILS.hashing import hex_part, sha256_bytes
from ..UTILS.logging import get_logger

logger = get_logger(__name__)

WHITEOUT_PREFIX = ".wh."


@dataclass
class CachedLayer:
    """Index information about a cached layer."""
    content_hash: str
    parent_hash: Optional[str]
    instruction: str
    payload_digest: str
    size: int
    added_at: str


def encode_delta(delta: LayerDelta) -> bytes:
    """
    Serializes a delta as an uncompressed tar archive.

    Entries are sorted and timestamps zeroed so equal deltas give equal bytes.
    Removals are stored as ``.wh.<name>`` whiteout entries.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for removed in sorted(delta.removed):
            parent, name = posixpath.split(removed)
            info = tarfile.TarInfo(posixpath.join(parent, WHITEOUT_PREFIX + name))
            info.mtime = 0
            tar.addfile(info, io.BytesIO(b""))
        for path, entry in sorted(delta.files.items()):
            info = tarfile.TarInfo(path)
            info.mtime = 0
            info.mode = entry.mode
            info.uname = entry.owner
            info.gname = entry.owner
            if entry.is_symlink:
                info.type = tarfile.SYMTYPE
                info.linkname = entry.link_target
                tar.addfile(info)
            else:
                info.size = len(entry.data)
                tar.addfile(info, io.BytesIO(entry.data))
    return buffer.getvalue()


def decode_delta(payload: bytes) -> LayerDelta:
    """Inverse of ``encode_delta``."""
    files: Dict[str, FileEntry] = {}
    removed: List[str] = []
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:") as tar:
        for member in tar.getmembers():
            # Skip absolute paths and parent directory references
            if member.name.startswith("/") or ".." in member.name.split("/"):
                continue
            parent, name = posixpath.split(member.name)
            if name.startswith(WHITEOUT_PREFIX):
                removed.append(posixpath.join(parent, name[len(WHITEOUT_PREFIX):]))
            elif member.issym():
                files[member.name] = FileEntry(link_target=member.linkname, mode=member.mode,
                                               owner=member.uname)
            elif member.isfile():
                data = tar.extractfile(member).read()
                files[member.name] = FileEntry(data=data, mode=member.mode, owner=member.uname)
    return LayerDelta(files=files, removed=tuple(removed))


class LayerCache:
    """
    Manages the local cache of build layers.
    One payload tarball and one JSON sidecar per layer, named by content hash.
    """

    def __init__(self, cache_dir: str):
        """
        Initialize the layer cache.

        Args:
            cache_dir: Directory for cache storage.
        """
        self.cache_dir = Path(cache_dir)
        self.layers_dir = self.cache_dir / "layers"
        self.locks_dir = self.cache_dir / "locks"

        self.layers_dir.mkdir(parents=True, exist_ok=True)
        self.locks_dir.mkdir(parents=True, exist_ok=True)

    def _payload_path(self, content_hash: str) -> Path:
        return self.layers_dir / f"{hex_part(content_hash)}.tar"

    def _meta_path(self, content_hash: str) -> Path:
        return self.layers_dir / f"{hex_part(content_hash)}.json"

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        tmp = path.with_suffix(path.suffix + f".tmp-{os.getpid()}-{time.time_ns()}")
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    @contextmanager
    def lock(self, content_hash: str) -> Iterator[None]:
        """
        Advisory exclusive lock for one content hash.

        Held by a builder while it checks for, executes and commits a layer so
        that concurrent builds never execute the same step twice.
        """
        lock_path = self.locks_dir / f"{hex_part(content_hash)}.lock"
        with open(lock_path, "a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def has_layer(self, content_hash: str) -> bool:
        """Check if a layer is cached."""
        return self._meta_path(content_hash).exists() and self._payload_path(content_hash).exists()

    def get_layer(self, content_hash: str) -> Optional[Layer]:
        """
        Load a cached layer.

        Args:
            content_hash: Layer content hash

        Returns:
            Layer if cached, None otherwise

        Raises:
            LayerIntegrityError: If the payload does not match its digest.
        """
        if not self.has_layer(content_hash):
            return None
        meta = json.loads(self._meta_path(content_hash).read_text())
        payload = self._payload_path(content_hash).read_bytes()
        self._verify(content_hash, meta["payload_digest"], payload)
        return Layer(
            content_hash=meta["content_hash"],
            parent_hash=meta.get("parent_hash"),
            instruction=parse_instruction(meta["instruction"]),
            delta=decode_delta(payload),
            payload_digest=meta["payload_digest"],
            size=meta.get("size", 0),
        )

    def get_layers(self, content_hashes: List[str]) -> List[Layer]:
        """
        Load several layers, failing on the first missing one.
        """
        layers = []
        for content_hash in content_hashes:
            layer = self.get_layer(content_hash)
            if layer is None:
                raise MissingDependencyFailure(content_hash, message=f"layer {content_hash} missing from cache")
            layers.append(layer)
        return layers

    def add_layer(self, content_hash: str, parent_hash: Optional[str], instruction: Any,
                  delta: LayerDelta) -> Layer:
        """
        Add a layer to the cache.

        Args:
            content_hash: Chained content hash of the layer
            parent_hash: Content hash of the previous layer
            instruction: The BuildInstruction that produced the delta
            delta: Filesystem changes

        Returns:
            The stored Layer
        """
        payload = encode_delta(delta)
        payload_digest = sha256_bytes(payload)
        meta = {
            "content_hash": content_hash,
            "parent_hash": parent_hash,
            "instruction": instruction.cache_key(),
            "payload_digest": payload_digest,
            "size": len(payload),
            "added_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        # payload first: a sidecar without payload never looks cached
        self._atomic_write(self._payload_path(content_hash), payload)
        self._atomic_write(self._meta_path(content_hash), json.dumps(meta, indent=2).encode())
        logger.debug("Cached layer %s (%d bytes)", content_hash[:19], len(payload))

        return Layer(
            content_hash=content_hash,
            parent_hash=parent_hash,
            instruction=instruction,
            delta=delta,
            payload_digest=payload_digest,
            size=len(payload),
        )

    def export_layer(self, content_hash: str) -> Tuple[Dict[str, Any], bytes]:
        """
        Raw sidecar and payload, as uploaded to a registry.
        """
        if not self.has_layer(content_hash):
            raise KeyError(f"Layer not in cache: {content_hash}")
        meta = json.loads(self._meta_path(content_hash).read_text())
        payload = self._payload_path(content_hash).read_bytes()
        self._verify(content_hash, meta["payload_digest"], payload)
        return meta, payload

    def import_layer(self, meta: Dict[str, Any], payload: bytes) -> None:
        """
        Store a layer downloaded from a registry after verifying its digest.
        """
        content_hash = meta["content_hash"]
        self._verify(content_hash, meta["payload_digest"], payload)
        with self.lock(content_hash):
            if self.has_layer(content_hash):
                return
            self._atomic_write(self._payload_path(content_hash), payload)
            self._atomic_write(self._meta_path(content_hash), json.dumps(meta, indent=2).encode())

    def remove_layer(self, content_hash: str) -> bool:
        """
        Remove a layer from the cache.

        Returns:
            True if removed, False if not found
        """
        found = False
        for path in (self._meta_path(content_hash), self._payload_path(content_hash)):
            if path.exists():
                path.unlink()
                found = True
        return found

    def list_layers(self) -> List[CachedLayer]:
        """
        List all cached layers.
        """
        layers = []
        for meta_path in sorted(self.layers_dir.glob("*.json")):
            meta = json.loads(meta_path.read_text())
            layers.append(CachedLayer(
                content_hash=meta["content_hash"],
                parent_hash=meta.get("parent_hash"),
                instruction=parse_instruction(meta["instruction"]).render(),
                payload_digest=meta["payload_digest"],
                size=meta.get("size", 0),
                added_at=meta.get("added_at", ""),
            ))
        return layers

    def prune(self, referenced: Set[str]) -> Dict[str, int]:
        """
        Remove every layer no stored manifest references.

        Args:
            referenced: Content hashes that must be kept

        Returns:
            Statistics about removed items
        """
        removed_layers = 0
        freed_bytes = 0

        for cached in self.list_layers():
            if cached.content_hash in referenced:
                continue
            with self.lock(cached.content_hash):
                payload_path = self._payload_path(cached.content_hash)
                if payload_path.exists():
                    freed_bytes += payload_path.stat().st_size
                if self.remove_layer(cached.content_hash):
                    removed_layers += 1

        return {"removed_layers": removed_layers, "freed_bytes": freed_bytes}

    @staticmethod
    def _verify(content_hash: str, expected: str, payload: bytes) -> None:
        actual = sha256_bytes(payload)
        if actual != expected:
            raise LayerIntegrityError(content_hash, expected, actual)

    def get_cache_size(self) -> int:
        """Get total cache size in bytes."""
        total = 0
        for item in self.cache_dir.rglob("*"):
            if item.is_file():
                total += item.stat().st_size
        return total

    @staticmethod
    def format_size(size_bytes: float) -> str:
        """Format a size in bytes to human readable string."""
        for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
            if size_bytes < 1024:
                return f"{size_bytes:.1f} {unit}"
            size_bytes /= 1024
        return f"{size_bytes:.1f} PB"
