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
Runtime settings shared by the builder, the registry client and the runtime.
"""
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_PRIVILEGED_COMMANDS = [
    "apk", "apt", "apt-get", "dnf", "dpkg", "microdnf", "rpm", "tdnf", "yum", "zypper",
    "adduser", "addgroup", "groupadd", "useradd", "usermod",
    "chown", "chroot", "mount", "su", "sudo",
]


def _default_state_dir() -> Path:
    return Path.home() / ".strata"


class StrataSettings(BaseModel):
    """
    All tunables, loaded by ``UTILS.config.load_settings``.
    """
    state_dir: Path = Field(default_factory=_default_state_dir)
    registry_dir: Optional[Path] = None

    log_level: str = "INFO"
    log_structured: bool = False

    default_manifest: str = "Dockerfile"
    ignore_file: str = ".dockerignore"
    run_timeout: Optional[float] = None
    privileged_commands: List[str] = Field(default_factory=lambda: list(DEFAULT_PRIVILEGED_COMMANDS))

    bind_address: str = "0.0.0.0"
    default_port: int = Field(default=3000, ge=1, le=65535)
    container_network: str = "127.77.0.0/16"
    proxy_host: str = "127.0.0.1"
    env_passthrough: List[str] = Field(default_factory=lambda: ["PATH", "LANG", "PYTHONPATH", "TZ"])
    stop_timeout: float = 10.0

    @field_validator("log_level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value}")
        return value

    @property
    def cache_dir(self) -> Path:
        return self.state_dir / "cache"

    @property
    def containers_dir(self) -> Path:
        return self.state_dir / "containers"

    @property
    def resolved_registry_dir(self) -> Path:
        return self.registry_dir or (self.state_dir / "registry")
