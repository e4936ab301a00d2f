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
Unit tests for instructions, manifests and container models.
"""
import pytest
from pydantic import ValidationError

from strata.MODELS.container import PortMapping
from strata.MODELS.image import FileEntry, ImageConfig, ImageManifest, LayerDelta
from strata.MODELS.instructions import (CopyFiles, ExposePort, FetchBase, RunCommand, SetUser,
                                        parse_instruction)


class TestInstructions:
    """Tests for BuildInstruction models."""

    def test_instructions_are_immutable(self):
        """Instructions cannot be changed after creation."""
        inst = SetUser(uid="node")
        with pytest.raises(ValidationError):
            inst.uid = "root"

    def test_cache_key_round_trip(self):
        """The stored form rebuilds the same instruction."""
        for inst in (FetchBase(image_ref="node:10"),
                     RunCommand.from_shell("npm install"),
                     CopyFiles(source_glob="*.js", dest_path="/app/", chown="node")):
            assert parse_instruction(inst.cache_key()) == inst

    def test_cache_key_differs_by_content(self):
        """Different commands never share a cache key."""
        assert RunCommand.from_shell("npm install").cache_key() != RunCommand.from_shell("npm ci").cache_key()

    def test_port_range(self):
        """EXPOSE only accepts TCP port numbers."""
        with pytest.raises(ValidationError):
            ExposePort(port=0)
        assert ExposePort(port=65535).port == 65535


class TestManifest:
    """Tests for ImageManifest."""

    def test_digest_is_deterministic(self):
        """Equal manifests have equal digests."""
        config = ImageConfig(user="node", exposed_ports=(3000,), entrypoint=("node", "app.js"))
        a = ImageManifest(layers=("sha256:" + "a" * 64,), config=config, history=("FROM scratch",))
        b = ImageManifest(layers=("sha256:" + "a" * 64,), config=config, history=("FROM scratch",))
        assert a.digest == b.digest
        assert a.digest.startswith("sha256:")
        assert ImageManifest.from_bytes(a.to_bytes()) == a

    def test_digest_depends_on_metadata(self):
        """A different user gives a different image."""
        a = ImageManifest(layers=(), config=ImageConfig(user="root"))
        b = ImageManifest(layers=(), config=ImageConfig(user="node"))
        assert a.digest != b.digest

    def test_exposed_ports(self):
        """Exposed ports are read from the config."""
        manifest = ImageManifest(layers=(), config=ImageConfig(exposed_ports=(3000, 8080)))
        assert manifest.exposed_ports == [3000, 8080]


class TestLayerDelta:
    """Tests for FileEntry and LayerDelta."""

    def test_delta_size_and_emptiness(self):
        """Size counts file bytes only."""
        assert LayerDelta().is_empty
        delta = LayerDelta(files={"app.js": FileEntry(data=b"12345")}, removed=("old.js",))
        assert not delta.is_empty
        assert delta.size == 5

    def test_symlink_entry(self):
        """Symlinks carry a target and no data."""
        entry = FileEntry(link_target="app.js")
        assert entry.is_symlink
        assert not FileEntry(data=b"x").is_symlink


class TestPortMapping:
    """Tests for PortMapping parsing."""

    def test_parse_pair(self):
        mapping = PortMapping.parse("8080:3000")
        assert (mapping.host_port, mapping.container_port) == (8080, 3000)
        assert str(mapping) == "8080->3000"

    def test_parse_single_port(self):
        assert PortMapping.parse("3000") == PortMapping(host_port=3000, container_port=3000)

    @pytest.mark.parametrize("text", ["", "a:b", "1:2:3", "0:3000"])
    def test_parse_invalid(self, text):
        with pytest.raises(ValueError):
            PortMapping.parse(text)
