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
Image reference parsing.
Turns 'hello-node', 'centos:centos7.6.1810' or 'registry.local:5000/team/app:v1'
into a canonical name used for tags, both locally and in a registry.
"""

import re
from dataclasses import dataclass
from typing import Optional

COMPONENT = re.compile(r'^[a-z0-9]+(?:[._-][a-z0-9]+)*$')
TAG = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - hello -> docker.io/library/hello:latest
        - team/hello:v1 -> docker.io/team/hello:v1
        - localhost:5000/hello -> localhost:5000/hello:latest
        - hello@sha256:abc... -> docker.io/library/hello@sha256:abc...
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string.

        Returns:
            Parsed ImageReference.

        Raises:
            ValueError: If the reference is empty or malformed.
        """
        if not reference or not reference.strip():
            raise ValueError("Empty image reference")
        reference = reference.strip()
        if reference.startswith("-") or any(c in reference for c in " <>|\"'\\"):
            raise ValueError(f"Invalid image reference: {reference}")

        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)
            if not digest.startswith("sha256:"):
                raise ValueError(f"Unsupported digest: {digest}")

        tag = None
        last_colon = reference.rfind(":")
        # a colon followed by a slash belongs to a registry port
        if last_colon != -1 and "/" not in reference[last_colon + 1:]:
            tag = reference[last_colon + 1:]
            reference = reference[:last_colon]
            if not TAG.match(tag):
                raise ValueError(f"Invalid tag: {tag}")

        parts = reference.split("/")
        first = parts[0]
        if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
            registry = first
            repository = "/".join(parts[1:])
        else:
            registry = cls.DEFAULT_REGISTRY
            repository = reference if len(parts) > 1 else f"library/{reference}"

        for component in repository.split("/"):
            if not COMPONENT.match(component):
                raise ValueError(f"Invalid repository name: {repository}")

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    @property
    def name(self) -> str:
        """Registry and repository without tag or digest."""
        return f"{self.registry}/{self.repository}"

    @property
    def full_name(self) -> str:
        """Get full image name with registry."""
        if self.digest:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag}"

    @property
    def short_name(self) -> str:
        """Get short image name (without registry if default)."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[len("library/"):]
        if self.digest:
            return f"{repo}@{self.digest}"
        return f"{repo}:{self.tag}"

    def __str__(self) -> str:
        return self.short_name
