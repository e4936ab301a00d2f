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
Local image store: manifests by digest and a tag index.
"""

import json
import os
import time
from pathlib import Path
from typing import Dict, List, Optional, Set

from ..MODELS.image import ImageManifest
from ..UTILS.errors import ImageNotFoundError
from ..UTILS.hashing import PREFIX, hex_part
from .image_reference import ImageReference


class ImageStore:
    """
    Stores manifests produced by builds or pulled from a registry.
    Manifests are immutable and referenced by digest; tags are pointers.
    """

    def __init__(self, cache_dir: str):
        """
        Args:
            cache_dir: Directory for cache storage, shared with the layer cache.
        """
        self.cache_dir = Path(cache_dir)
        self.images_dir = self.cache_dir / "images"
        self.tags_file = self.cache_dir / "tags.json"
        self.images_dir.mkdir(parents=True, exist_ok=True)

    def _manifest_path(self, digest: str) -> Path:
        return self.images_dir / f"{hex_part(digest)}.json"

    def _load_tags(self) -> Dict[str, str]:
        if self.tags_file.exists():
            try:
                with open(self.tags_file, 'r') as f:
                    return json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Corrupt tag index {self.tags_file}: {e}")
        return {}

    def _save_tags(self, tags: Dict[str, str]) -> None:
        tmp = self.tags_file.with_suffix(f".tmp-{os.getpid()}-{time.time_ns()}")
        with open(tmp, 'w') as f:
            json.dump(tags, f, indent=2, sort_keys=True)
        os.replace(tmp, self.tags_file)

    def save(self, manifest: ImageManifest) -> str:
        """
        Stores a manifest and returns its digest.
        """
        digest = manifest.digest
        path = self._manifest_path(digest)
        if not path.exists():
            path.write_bytes(manifest.to_bytes())
        return digest

    def get(self, digest: str) -> Optional[ImageManifest]:
        """Loads a manifest by digest."""
        path = self._manifest_path(digest)
        if not path.exists():
            return None
        return ImageManifest.from_bytes(path.read_bytes())

    def tag(self, digest: str, reference: str) -> str:
        """
        Points a tag at a stored manifest.

        Returns:
            The canonical tag name.
        """
        if self.get(digest) is None:
            raise ImageNotFoundError(digest)
        name = ImageReference.parse(reference).full_name
        tags = self._load_tags()
        tags[name] = digest
        self._save_tags(tags)
        return name

    def untag(self, reference: str) -> bool:
        name = ImageReference.parse(reference).full_name
        tags = self._load_tags()
        if name not in tags:
            return False
        del tags[name]
        self._save_tags(tags)
        return True

    def resolve_digest(self, reference: str) -> Optional[str]:
        """
        Maps a tag, a ``sha256:`` digest or a unique digest prefix to a digest.
        """
        if reference.startswith(PREFIX):
            return reference if self._manifest_path(reference).exists() else None
        try:
            name = ImageReference.parse(reference)
        except ValueError:
            name = None
        if name is not None:
            if name.digest:
                return name.digest if self.get(name.digest) else None
            digest = self._load_tags().get(name.full_name)
            if digest:
                return digest
        # short id as printed by `images`
        if len(reference) >= 6 and all(c in "0123456789abcdef" for c in reference):
            found = [p.stem for p in self.images_dir.glob(f"{reference}*.json")]
            if len(found) == 1:
                return PREFIX + found[0]
        return None

    def resolve(self, reference: str) -> Optional[ImageManifest]:
        digest = self.resolve_digest(reference)
        return self.get(digest) if digest else None

    def require(self, reference: str) -> ImageManifest:
        """Like ``resolve`` but raises ImageNotFoundError."""
        manifest = self.resolve(reference)
        if manifest is None:
            raise ImageNotFoundError(reference)
        return manifest

    def list_tags(self) -> Dict[str, str]:
        return dict(sorted(self._load_tags().items()))

    def tags_for(self, digest: str) -> List[str]:
        return sorted(name for name, d in self._load_tags().items() if d == digest)

    def list_digests(self) -> List[str]:
        return sorted(PREFIX + p.stem for p in self.images_dir.glob("*.json"))

    def referenced_layers(self) -> Set[str]:
        """Content hashes of every layer used by a stored manifest."""
        layers: Set[str] = set()
        for digest in self.list_digests():
            manifest = self.get(digest)
            if manifest is not None:
                layers.update(manifest.layers)
        return layers

    def prune_untagged(self) -> int:
        """
        Deletes manifests no tag points at.

        Returns:
            Number of manifests removed.
        """
        tagged = set(self._load_tags().values())
        removed = 0
        for digest in self.list_digests():
            if digest not in tagged:
                self._manifest_path(digest).unlink()
                removed += 1
        return removed

    def remove(self, digest: str) -> bool:
        """
        Deletes a manifest and every tag pointing at it. Layers stay cached.
        """
        path = self._manifest_path(digest)
        tags = self._load_tags()
        kept = {name: d for name, d in tags.items() if d != digest}
        if len(kept) != len(tags):
            self._save_tags(kept)
        if not path.exists():
            return False
        path.unlink()
        return True
