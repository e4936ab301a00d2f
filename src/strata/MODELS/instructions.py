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
Models for build instructions, one per manifest directive.
"""
import json
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

SHELL = ("/bin/sh", "-c")


class BuildInstruction(BaseModel):
    """
    Base for all instructions. Instances are immutable once created.
    """
    model_config = ConfigDict(frozen=True)

    directive: str

    def cache_key(self) -> Dict[str, Any]:
        """JSON-able identity of the instruction, used in layer hashing."""
        return self.model_dump(mode="json")

    def render(self) -> str:
        """Renders the instruction back to a manifest line."""
        raise NotImplementedError


def _render_argv(directive: str, argv: Tuple[str, ...], shell: bool) -> str:
    if shell and len(argv) == 3 and argv[:2] == SHELL:
        return f"{directive} {argv[2]}"
    return f"{directive} {json.dumps(list(argv))}"


class FetchBase(BuildInstruction):
    """FROM: start from a base image (``scratch`` for an empty one)."""
    directive: Literal["FROM"] = "FROM"
    image_ref: str = Field(min_length=1)

    def render(self) -> str:
        return f"FROM {self.image_ref}"


class RunCommand(BuildInstruction):
    """RUN: execute a command against the current filesystem."""
    directive: Literal["RUN"] = "RUN"
    argv: Tuple[str, ...] = Field(min_length=1)
    shell: bool = False

    @classmethod
    def from_shell(cls, command: str) -> "RunCommand":
        return cls(argv=SHELL + (command,), shell=True)

    def render(self) -> str:
        return _render_argv("RUN", self.argv, self.shell)


class CopyFiles(BuildInstruction):
    """COPY: copy files matching a glob from the build context."""
    directive: Literal["COPY"] = "COPY"
    source_glob: str = Field(min_length=1)
    dest_path: str = Field(min_length=1)
    chown: Optional[str] = None

    def render(self) -> str:
        flag = f"--chown={self.chown} " if self.chown else ""
        return f"COPY {flag}{self.source_glob} {self.dest_path}"


class SetUser(BuildInstruction):
    """USER: identity for subsequent RUN steps and for the entrypoint."""
    directive: Literal["USER"] = "USER"
    uid: str = Field(min_length=1)

    def render(self) -> str:
        return f"USER {self.uid}"


class SetWorkdir(BuildInstruction):
    """WORKDIR: working directory for subsequent steps and the entrypoint."""
    directive: Literal["WORKDIR"] = "WORKDIR"
    path: str = Field(min_length=1)

    def render(self) -> str:
        return f"WORKDIR {self.path}"


class ExposePort(BuildInstruction):
    """EXPOSE: metadata only, does not publish anything on the host."""
    directive: Literal["EXPOSE"] = "EXPOSE"
    port: int = Field(ge=1, le=65535)

    def render(self) -> str:
        return f"EXPOSE {self.port}"


class SetEntrypoint(BuildInstruction):
    """CMD: command executed when a container starts."""
    directive: Literal["CMD"] = "CMD"
    argv: Tuple[str, ...] = Field(min_length=1)
    shell: bool = False

    @classmethod
    def from_shell(cls, command: str) -> "SetEntrypoint":
        return cls(argv=SHELL + (command,), shell=True)

    def render(self) -> str:
        return _render_argv("CMD", self.argv, self.shell)


Instruction = Annotated[
    Union[FetchBase, RunCommand, CopyFiles, SetUser, SetWorkdir, ExposePort, SetEntrypoint],
    Field(discriminator="directive"),
]

_instruction_adapter = TypeAdapter(Instruction)


def parse_instruction(data: Dict[str, Any]) -> BuildInstruction:
    """Rebuilds an instruction from its ``cache_key()`` form."""
    return _instruction_adapter.validate_python(data)
