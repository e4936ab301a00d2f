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
Unit tests for the registry module.
"""
import pytest

from strata.MODELS.image import FileEntry, ImageConfig, ImageManifest, LayerDelta
from strata.MODELS.instructions import FetchBase, RunCommand
from strata.REGISTRY.image_reference import ImageReference
from strata.REGISTRY.image_store import ImageStore
from strata.REGISTRY.layer_cache import LayerCache
from strata.REGISTRY.registry_client import DirectoryRegistry
from strata.UTILS.errors import ImageNotFoundError, LayerIntegrityError
from strata.UTILS.hashing import chain_hash, hex_part


class TestImageReference:
    """Tests for ImageReference parsing."""

    def test_parse_simple_name(self):
        """Test parsing a simple image name."""
        ref = ImageReference.parse("hello-node")
        assert ref.registry == "docker.io"
        assert ref.repository == "library/hello-node"
        assert ref.tag == "latest"

    def test_parse_with_tag(self):
        """Test parsing image with tag."""
        ref = ImageReference.parse("centos:centos7.6.1810")
        assert ref.repository == "library/centos"
        assert ref.tag == "centos7.6.1810"

    def test_parse_user_image(self):
        """Test parsing user/image format."""
        ref = ImageReference.parse("myuser/myimage:v1")
        assert ref.registry == "docker.io"
        assert ref.repository == "myuser/myimage"
        assert ref.tag == "v1"

    def test_parse_localhost_registry(self):
        """Test parsing localhost registry."""
        ref = ImageReference.parse("localhost:5000/myimage:v1")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "myimage"
        assert ref.tag == "v1"

    def test_parse_with_digest(self):
        """Test parsing image with digest."""
        digest = "sha256:" + "a" * 64
        ref = ImageReference.parse(f"hello@{digest}")
        assert ref.digest == digest
        assert ref.tag is None
        assert ref.full_name == f"docker.io/library/hello@{digest}"

    def test_names(self):
        """Test full_name and short_name."""
        ref = ImageReference.parse("hello-node:v1")
        assert ref.full_name == "docker.io/library/hello-node:v1"
        assert ref.short_name == "hello-node:v1"
        assert str(ImageReference.parse("gcr.io/team/app")) == "gcr.io/team/app:latest"

    @pytest.mark.parametrize("reference", ["", "  ", "-rf", "Upper/Case", "a:b:c", "img@md5:1", "a b"])
    def test_invalid_references(self, reference):
        """Test malformed references are rejected."""
        with pytest.raises(ValueError):
            ImageReference.parse(reference)


def _manifest(layer_cache: LayerCache, text: bytes = b"hello") -> ImageManifest:
    base = FetchBase(image_ref="scratch")
    run = RunCommand.from_shell(f"echo {text.decode()} > hello.txt")
    first = chain_hash(None, base.cache_key())
    second = chain_hash(first, run.cache_key())
    layer_cache.add_layer(first, None, base, LayerDelta())
    layer_cache.add_layer(second, first, run, LayerDelta(files={"hello.txt": FileEntry(data=text)}))
    return ImageManifest(layers=(first, second), config=ImageConfig(entrypoint=("cat", "hello.txt")),
                         history=(base.render(), run.render()))


class TestImageStore:
    """Tests for ImageStore."""

    def test_save_tag_resolve(self, layer_cache, image_store):
        """Images resolve by tag, digest and short id."""
        manifest = _manifest(layer_cache)
        digest = image_store.save(manifest)

        assert image_store.tag(digest, "hello") == "docker.io/library/hello:latest"
        assert image_store.resolve("hello") == manifest
        assert image_store.resolve("hello:latest") == manifest
        assert image_store.resolve(digest) == manifest
        assert image_store.resolve(hex_part(digest)[:12]) == manifest
        assert image_store.resolve("other") is None
        assert image_store.tags_for(digest) == ["docker.io/library/hello:latest"]

    def test_tag_unknown_digest(self, image_store):
        """Tagging needs a stored manifest."""
        with pytest.raises(ImageNotFoundError):
            image_store.tag("sha256:" + "0" * 64, "hello")

    def test_require(self, image_store):
        """require raises for unknown images."""
        with pytest.raises(ImageNotFoundError):
            image_store.require("nothing-here")

    def test_prune_untagged(self, layer_cache, image_store):
        """Only untagged manifests are pruned, and their layers become unreferenced."""
        tagged = image_store.save(_manifest(layer_cache, b"one"))
        untagged = image_store.save(_manifest(layer_cache, b"two"))
        image_store.tag(tagged, "keep")

        assert image_store.prune_untagged() == 1
        assert image_store.list_digests() == [tagged]
        referenced = image_store.referenced_layers()
        assert set(image_store.get(tagged).layers) == referenced
        assert untagged not in image_store.list_digests()

    def test_remove_drops_tags(self, layer_cache, image_store):
        """Removing an image removes every tag pointing at it."""
        digest = image_store.save(_manifest(layer_cache))
        image_store.tag(digest, "a")
        image_store.tag(digest, "b:v2")
        assert image_store.remove(digest)
        assert image_store.list_tags() == {}
        assert not image_store.remove(digest)


class TestDirectoryRegistry:
    """Tests for push and pull through a shared directory."""

    def test_push_then_pull_into_fresh_cache(self, tmp_path, layer_cache, image_store, registry):
        """A pulled image is identical to the pushed one."""
        manifest = _manifest(layer_cache)
        digest = image_store.save(manifest)

        assert registry.push(digest, "registry.local/team/hello:v1") == digest
        assert registry.exists("registry.local/team/hello:v1")

        other_cache = LayerCache(str(tmp_path / "other"))
        other_store = ImageStore(str(tmp_path / "other"))
        other = DirectoryRegistry(str(registry.root), other_cache, other_store)
        assert other.pull("registry.local/team/hello:v1") == digest

        assert other_store.resolve("registry.local/team/hello:v1") == manifest
        for content_hash in manifest.layers:
            assert other_cache.get_layer(content_hash).delta == layer_cache.get_layer(content_hash).delta

    def test_push_skips_existing_blobs(self, layer_cache, image_store, registry):
        """Pushing twice uploads nothing new."""
        digest = image_store.save(_manifest(layer_cache))
        registry.push(digest, "hello:v1")
        blobs = sorted(p.name for p in registry.blobs_dir.iterdir())
        registry.push(digest, "hello:v2")
        assert sorted(p.name for p in registry.blobs_dir.iterdir()) == blobs

    def test_pull_unknown_tag(self, registry):
        """Unknown tags are reported."""
        assert not registry.exists("missing:v1")
        with pytest.raises(ImageNotFoundError):
            registry.pull("missing:v1")

    def test_pull_detects_tampered_blob(self, tmp_path, layer_cache, image_store, registry):
        """A modified blob is refused on pull."""
        manifest = _manifest(layer_cache)
        digest = image_store.save(manifest)
        registry.push(digest, "hello:v1")
        blob = registry.blobs_dir / f"{hex_part(manifest.layers[1])}.tar"
        blob.write_bytes(blob.read_bytes() + b"\0")

        other = DirectoryRegistry(str(registry.root), LayerCache(str(tmp_path / "o")),
                                  ImageStore(str(tmp_path / "o")))
        with pytest.raises(LayerIntegrityError):
            other.pull("hello:v1")

    def test_push_needs_tag(self, layer_cache, image_store, registry):
        """Pushing to a digest reference is rejected."""
        digest = image_store.save(_manifest(layer_cache))
        with pytest.raises(ValueError):
            registry.push(digest, f"hello@{digest}")
