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
Container runtime: starts image entrypoints as host processes, each on its
own loopback address, with optional host port exposure.
"""
import os
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import psutil

from ..BUILDERS.filesystem_view import FilesystemView
from ..MODELS.container import PortMapping, RunningContainer
from ..MODELS.image import ImageManifest
from ..MODELS.settings import StrataSettings
from ..REGISTRY.image_store import ImageStore
from ..REGISTRY.layer_cache import LayerCache
from ..UTILS.errors import MissingDependencyFailure, NetworkBindFailure
from ..UTILS.logging import get_logger
from ..UTILS.port_finder import allocate_address
from .port_proxy import PortProxy
from .process_runner import ProcessRunner

logger = get_logger(__name__)


@dataclass
class _Handle:
    container: RunningContainer
    runner: ProcessRunner
    proxies: List[PortProxy] = field(default_factory=list)


class ContainerRuntime:
    """
    Runs containers from stored manifests.

    Manifests and layers are only read: each container gets a fresh rootfs
    flattened from its layers.
    """
    def __init__(self, settings: StrataSettings, layer_cache: LayerCache, image_store: ImageStore):
        """
        :param settings: Shared settings (network pool, proxy host, timeouts).
        :param layer_cache: Source of layer contents.
        :param image_store: Source of manifests.
        """
        self.settings = settings
        self.layer_cache = layer_cache
        self.image_store = image_store
        self._containers: Dict[str, _Handle] = {}

    def run(self, manifest_ref: str, port_mapping: Sequence[PortMapping] = (),
            interactive: bool = False) -> int:
        """
        Starts a container and returns the pid of its entrypoint process.

        :param manifest_ref: Digest, tag or short id of the image.
        :param port_mapping: Host ports to expose. Without one the container
            is only reachable on its private address.
        :param interactive: Attach the caller's terminal.
        :raises ImageNotFoundError: If the manifest is unknown.
        :raises NetworkBindFailure: If a host port is taken.
        :raises MissingDependencyFailure: If the image has no CMD or the
            entrypoint program is missing.
        """
        manifest = self.image_store.require(manifest_ref)
        if not manifest.config.entrypoint:
            raise MissingDependencyFailure("CMD", message=f"image {manifest_ref} has no CMD to run")
        self._check_mapping(port_mapping)

        container_id = uuid.uuid4().hex[:12]
        address = allocate_address(self.settings.container_network,
                                   [h.container.address for h in self._containers.values()])
        container_dir = self.settings.containers_dir / container_id
        rootfs = container_dir / "rootfs"
        runner = ProcessRunner(container_id, log_file=str(container_dir / "container.log"))
        proxies: List[PortProxy] = []

        try:
            for mapping in port_mapping:
                proxy = PortProxy(self.settings.proxy_host, mapping.host_port,
                                  address, mapping.container_port)
                proxy.bind()
                proxies.append(proxy)

            rootfs.mkdir(parents=True)
            self._materialize(manifest, rootfs)
            workdir = rootfs / manifest.config.workdir.lstrip('/')
            workdir.mkdir(parents=True, exist_ok=True)

            env = self._environment(manifest, address, port_mapping, rootfs, workdir)
            command = self._command(manifest, rootfs)
            pid = runner.start(command, env, working_dir=str(workdir), interactive=interactive)

            for proxy in proxies:
                proxy.start()
        except BaseException:
            for proxy in proxies:
                proxy.stop()
            runner.stop(timeout=self.settings.stop_timeout)
            shutil.rmtree(container_dir, ignore_errors=True)
            raise

        container = RunningContainer(
            id=container_id,
            manifest_ref=manifest.digest,
            port_mapping=list(port_mapping),
            pid=pid,
            address=address,
            rootfs=str(rootfs),
            interactive=interactive,
            log_file=None if interactive else runner.log_file,
        )
        self._containers[container_id] = _Handle(container, runner, proxies)
        logger.info("Started container %s (pid %d) on %s%s", container_id, pid, address,
                    "".join(f", {m}" for m in port_mapping))
        return pid

    def get(self, container_id: str) -> Optional[RunningContainer]:
        handle = self._containers.get(container_id)
        return handle.container if handle else None

    def find_by_pid(self, pid: int) -> Optional[RunningContainer]:
        for handle in self._containers.values():
            if handle.container.pid == pid:
                return handle.container
        return None

    def wait(self, container_id: str, timeout: Optional[float] = None) -> Optional[int]:
        """Blocks until the container's process exits and returns its exit code."""
        handle = self._require(container_id)
        return handle.runner.wait(timeout=timeout)

    def stop(self, container_id: str) -> Optional[int]:
        """
        Stops a container, closes its host ports and deletes its rootfs.

        :return: Exit code of the entrypoint process.
        """
        handle = self._containers.pop(container_id, None)
        if handle is None:
            raise KeyError(f"No such container: {container_id}")
        for proxy in handle.proxies:
            proxy.stop()
        handle.runner.stop(timeout=self.settings.stop_timeout)
        shutil.rmtree(handle.container.rootfs, ignore_errors=True)
        logger.info("Stopped container %s", container_id)
        return handle.runner.get_exit_code()

    def stop_all(self) -> None:
        for container_id in list(self._containers):
            self.stop(container_id)

    def ps(self) -> List[Dict[str, Any]]:
        """
        Status of every container started by this runtime.
        """
        rows = []
        for container_id, handle in self._containers.items():
            container = handle.container
            rows.append({
                "id": container_id,
                "image": container.manifest_ref,
                "pid": container.pid,
                "address": container.address,
                "ports": ", ".join(str(m) for m in container.port_mapping),
                "status": self._status(handle),
            })
        return rows

    @staticmethod
    def _status(handle: _Handle) -> str:
        exit_code = handle.runner.get_exit_code()
        if exit_code is not None:
            return f"exited({exit_code})"
        try:
            return psutil.Process(handle.container.pid).status()
        except psutil.NoSuchProcess:
            return "stopped"

    def _require(self, container_id: str) -> _Handle:
        handle = self._containers.get(container_id)
        if handle is None:
            raise KeyError(f"No such container: {container_id}")
        return handle

    def _check_mapping(self, port_mapping: Sequence[PortMapping]) -> None:
        seen = set()
        for mapping in port_mapping:
            if mapping.host_port in seen:
                raise NetworkBindFailure(mapping.host_port, self.settings.proxy_host,
                                         reason="port mapped twice")
            seen.add(mapping.host_port)

    def _materialize(self, manifest: ImageManifest, rootfs: Path) -> None:
        layers = self.layer_cache.get_layers(list(manifest.layers))
        FilesystemView.from_layers(layers).materialize(rootfs)

    def _environment(self, manifest: ImageManifest, address: str,
                     port_mapping: Sequence[PortMapping], rootfs: Path, workdir: Path) -> Dict[str, str]:
        if port_mapping:
            port = port_mapping[0].container_port
        elif manifest.exposed_ports:
            port = manifest.exposed_ports[0]
        else:
            port = self.settings.default_port
        env = {key: os.environ[key] for key in self.settings.env_passthrough if key in os.environ}
        env.update({
            "HOME": str(workdir),
            "USER": manifest.config.user,
            "PORT": str(port),
            "STRATA_BIND_ADDRESS": address,
            "STRATA_ROOTFS": str(rootfs),
        })
        return env

    @staticmethod
    def _command(manifest: ImageManifest, rootfs: Path) -> List[str]:
        command = list(manifest.config.entrypoint)
        program = command[0]
        # absolute programs shipped in the image run from the rootfs
        if program.startswith('/'):
            inside = rootfs / program.lstrip('/')
            if inside.is_file():
                command[0] = str(inside)
        return command
