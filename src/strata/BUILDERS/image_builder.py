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
Builds manifests into stacks of cached, content-addressed layers.
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ..MODELS.image import ImageManifest
from ..MODELS.instructions import BuildInstruction, FetchBase
from ..MODELS.settings import StrataSettings
from ..PARSERS.buildfile_parser import BuildfileParser
from ..REGISTRY.image_store import ImageStore
from ..REGISTRY.layer_cache import LayerCache
from ..REGISTRY.registry_client import RegistryClient
from ..UTILS.errors import ImageNotFoundError, ManifestSyntaxError
from ..UTILS.hashing import chain_hash, short_hash
from ..UTILS.logging import get_logger
from .filesystem_view import FilesystemView
from .instruction_executor import BuildState, InstructionExecutor

logger = get_logger(__name__)


@dataclass
class StepResult:
    """Outcome of one instruction in a build."""
    index: int
    instruction: str
    content_hash: str
    cached: bool


@dataclass
class BuildResult:
    """A completed build: the manifest plus per-step cache information."""
    manifest: ImageManifest
    steps: List[StepResult] = field(default_factory=list)
    tag: Optional[str] = None

    @property
    def cache_hits(self) -> int:
        return sum(1 for step in self.steps if step.cached)


class ImageBuilder:
    """
    Executes instructions strictly in order, reusing cached layers whose
    content hash is already known.
    """
    def __init__(self, settings: StrataSettings, layer_cache: LayerCache, image_store: ImageStore,
                 registry: Optional[RegistryClient] = None):
        """
        Initializes the ImageBuilder.

        :param settings: Shared settings.
        :param layer_cache: Cache holding every committed layer.
        :param image_store: Store receiving finished manifests.
        :param registry: Optional registry used to pull missing base images.
        """
        self.settings = settings
        self.layer_cache = layer_cache
        self.image_store = image_store
        self.registry = registry
        self.parser = BuildfileParser()

    def build(self, instructions: Sequence[BuildInstruction], context: str,
              tag: Optional[str] = None, no_cache: bool = False) -> ImageManifest:
        """
        Builds an image and returns its manifest.

        :param instructions: Ordered instructions, starting with FROM.
        :param context: Build context directory.
        :param tag: Optional name to tag the result with.
        :param no_cache: Execute every step even when a cached layer exists.
        :return: The manifest of the completed image.
        """
        return self.build_with_report(instructions, context, tag=tag, no_cache=no_cache).manifest

    def build_file(self, manifest_path: Optional[str], context: str,
                   tag: Optional[str] = None, no_cache: bool = False) -> BuildResult:
        """
        Parses a manifest file (``<context>/Dockerfile`` by default) and builds it.
        """
        if manifest_path is None:
            manifest_path = os.path.join(context, self.settings.default_manifest)
        instructions = self.parser.parse(manifest_path)
        return self.build_with_report(instructions, context, tag=tag, no_cache=no_cache)

    def build_with_report(self, instructions: Sequence[BuildInstruction], context: str,
                          tag: Optional[str] = None, no_cache: bool = False) -> BuildResult:
        """
        Builds an image and reports which steps came from the cache.

        Every failure aborts the build before a manifest exists; layers
        committed by earlier steps stay cached for the next attempt.
        """
        self._validate(instructions)
        executor = InstructionExecutor(context, self.settings, resolve_base=self._resolve_base)
        state = BuildState()
        parent: Optional[str] = None
        layer_hashes: List[str] = []
        steps: List[StepResult] = []
        total = len(instructions)

        for index, instruction in enumerate(instructions):
            rendered = instruction.render()
            logger.info("Step %d/%d : %s", index + 1, total, rendered)

            step = executor.prepare(index, instruction, state)
            content_hash = chain_hash(parent, instruction.cache_key(), step.inputs)

            with self.layer_cache.lock(content_hash):
                layer = None if no_cache else self.layer_cache.get_layer(content_hash)
                cached = layer is not None
                if cached:
                    logger.info(" ---> Using cache")
                else:
                    delta = executor.execute(step, state)
                    layer = self.layer_cache.add_layer(content_hash, parent, instruction, delta)
            logger.info(" ---> %s", short_hash(content_hash))

            state.apply(step, layer.delta)
            layer_hashes.append(content_hash)
            steps.append(StepResult(index, rendered, content_hash, cached))
            parent = content_hash

        manifest = ImageManifest(
            layers=tuple(layer_hashes),
            config=state.to_config(),
            history=tuple(step.instruction for step in steps),
        )
        digest = self.image_store.save(manifest)
        tag_name = self.image_store.tag(digest, tag) if tag else None
        logger.info("Successfully built %s", short_hash(digest))
        if tag_name:
            logger.info("Successfully tagged %s", tag_name)
        return BuildResult(manifest=manifest, steps=steps, tag=tag_name)

    @staticmethod
    def _validate(instructions: Sequence[BuildInstruction]) -> None:
        if not instructions:
            raise ManifestSyntaxError("manifest contains no instructions")
        if not isinstance(instructions[0], FetchBase):
            raise ManifestSyntaxError("first instruction must be FROM")
        if any(isinstance(i, FetchBase) for i in instructions[1:]):
            raise ManifestSyntaxError("only a single FROM is supported")

    def _resolve_base(self, image_ref: str) -> Optional[Tuple[ImageManifest, FilesystemView]]:
        manifest = self.image_store.resolve(image_ref)
        if manifest is None and self.registry is not None:
            try:
                if self.registry.exists(image_ref):
                    self.registry.pull(image_ref)
                    manifest = self.image_store.resolve(image_ref)
            except (ImageNotFoundError, ValueError) as e:
                logger.debug("Base image %s not pullable: %s", image_ref, e)
        if manifest is None:
            return None
        return manifest, FilesystemView.from_layers(self.layer_cache.get_layers(list(manifest.layers)))
