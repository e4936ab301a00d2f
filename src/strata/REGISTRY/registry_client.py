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
Registry clients for pushing and pulling images.
Registries only store and return manifests by reference; they never mutate them.
"""

import json
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Tuple

from ..MODELS.image import ImageManifest
from ..UTILS.errors import ImageNotFoundError, LayerIntegrityError
from ..UTILS.hashing import hex_part, sha256_bytes
from ..UTILS.logging import get_logger
from .image_reference import ImageReference
from .image_store import ImageStore
from .layer_cache import LayerCache

logger = get_logger(__name__)


class RegistryClient(ABC):
    """
    Push/pull endpoint for images. Transport and authentication belong to the
    concrete client.
    """

    def __init__(self, layer_cache: LayerCache, image_store: ImageStore):
        self.layer_cache = layer_cache
        self.image_store = image_store

    @abstractmethod
    def push(self, manifest_ref: str, remote_tag: str) -> str:
        """
        Uploads a local image under ``remote_tag``.

        Returns:
            The pushed manifest digest.
        """

    @abstractmethod
    def pull(self, remote_tag: str) -> str:
        """
        Downloads ``remote_tag`` into the local store and tags it locally.

        Returns:
            The manifest reference (digest).
        """

    @abstractmethod
    def exists(self, remote_tag: str) -> bool:
        """Whether the registry knows ``remote_tag``."""


class DirectoryRegistry(RegistryClient):
    """
    Registry backed by a shared directory::

        <root>/blobs/<hex>.tar, <hex>.json      layer payloads and sidecars
        <root>/manifests/<hex>.json             manifests by digest
        <root>/tags/<registry>/<repository>/<tag>.json
    """

    def __init__(self, root: str, layer_cache: LayerCache, image_store: ImageStore):
        """
        Args:
            root: Registry directory, created when missing.
            layer_cache: Local layer cache.
            image_store: Local image store.
        """
        super().__init__(layer_cache, image_store)
        self.root = Path(root)
        self.blobs_dir = self.root / "blobs"
        self.manifests_dir = self.root / "manifests"
        self.tags_dir = self.root / "tags"
        for directory in (self.blobs_dir, self.manifests_dir, self.tags_dir):
            directory.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + f".tmp-{os.getpid()}-{time.time_ns()}")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)

    def _tag_path(self, remote_tag: str) -> Tuple[ImageReference, Path]:
        ref = ImageReference.parse(remote_tag)
        if ref.digest:
            raise ValueError(f"Push and pull need a tag, not a digest: {remote_tag}")
        return ref, self.tags_dir / ref.registry / ref.repository / f"{ref.tag}.json"

    def exists(self, remote_tag: str) -> bool:
        return self._tag_path(remote_tag)[1].exists()

    def push(self, manifest_ref: str, remote_tag: str) -> str:
        manifest = self.image_store.require(manifest_ref)
        ref, tag_path = self._tag_path(remote_tag)
        logger.info("The push refers to repository [%s]", ref.name)

        for content_hash in manifest.layers:
            name = hex_part(content_hash)
            if (self.blobs_dir / f"{name}.json").exists():
                logger.info("%s: Layer already exists", name[:12])
                continue
            meta, payload = self.layer_cache.export_layer(content_hash)
            self._write(self.blobs_dir / f"{name}.tar", payload)
            self._write(self.blobs_dir / f"{name}.json", json.dumps(meta, indent=2).encode())
            logger.info("%s: Pushed", name[:12])

        digest = manifest.digest
        self._write(self.manifests_dir / f"{hex_part(digest)}.json", manifest.to_bytes())
        self._write(tag_path, json.dumps({"digest": digest}).encode())
        logger.info("%s: digest: %s", ref.tag, digest)
        return digest

    def pull(self, remote_tag: str) -> str:
        ref, tag_path = self._tag_path(remote_tag)
        if not tag_path.exists():
            raise ImageNotFoundError(ref.full_name)
        logger.info("Pulling from %s", ref.name)

        digest = json.loads(tag_path.read_text())["digest"]
        manifest_path = self.manifests_dir / f"{hex_part(digest)}.json"
        if not manifest_path.exists():
            raise ImageNotFoundError(f"{ref.name}@{digest}")
        data = manifest_path.read_bytes()
        manifest = ImageManifest.from_bytes(data)
        if manifest.digest != digest:
            raise LayerIntegrityError(ref.full_name, digest, manifest.digest)

        for content_hash in manifest.layers:
            if self.layer_cache.has_layer(content_hash):
                logger.info("%s: Already exists", hex_part(content_hash)[:12])
                continue
            meta, payload = self._read_blob(content_hash)
            self.layer_cache.import_layer(meta, payload)
            logger.info("%s: Pull complete", hex_part(content_hash)[:12])

        self.image_store.save(manifest)
        self.image_store.tag(digest, remote_tag)
        logger.info("Digest: %s", digest)
        return digest

    def _read_blob(self, content_hash: str) -> Tuple[Dict[str, Any], bytes]:
        name = hex_part(content_hash)
        meta_path = self.blobs_dir / f"{name}.json"
        payload_path = self.blobs_dir / f"{name}.tar"
        if not meta_path.exists() or not payload_path.exists():
            raise ImageNotFoundError(content_hash)
        meta = json.loads(meta_path.read_text())
        payload = payload_path.read_bytes()
        if meta.get("content_hash") != content_hash:
            raise LayerIntegrityError(content_hash, content_hash, str(meta.get("content_hash")))
        actual = sha256_bytes(payload)
        if actual != meta["payload_digest"]:
            raise LayerIntegrityError(content_hash, meta["payload_digest"], actual)
        return meta, payload

