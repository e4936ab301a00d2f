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
Execution of single build instructions against a filesystem view.
"""
import os
import posixpath
import shlex
import stat
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..MODELS.image import ROOT_USER, FileEntry, ImageConfig, ImageManifest, LayerDelta
from ..MODELS.instructions import (BuildInstruction, CopyFiles, ExposePort, FetchBase, RunCommand,
                                   SetEntrypoint, SetUser, SetWorkdir)
from ..MODELS.settings import StrataSettings
from ..PARSERS.ignore_parser import IgnoreRules
from ..UTILS.errors import (BuildInstructionFailure, GlobMatchFailure, MissingDependencyFailure,
                            PermissionFailure)
from ..UTILS.logging import get_logger
from .filesystem_view import FilesystemView, normalize_path

logger = get_logger(__name__)

SCRATCH = "scratch"
COMMAND_SEPARATORS = {"&&", "||", ";", "|", "&"}

# Resolves a base image reference to (manifest, flattened view), or None.
BaseResolver = Callable[[str], Optional[Tuple[ImageManifest, FilesystemView]]]


def user_name(user: str) -> str:
    """Drops the group part of ``user:group``."""
    return user.split(":", 1)[0]


def is_privileged(user: str) -> bool:
    """root and uid 0 (with or without a group) are privileged."""
    return user_name(user) in (ROOT_USER, "0")


@dataclass
class BuildState:
    """
    Mutable state threaded through one build.
    """
    view: FilesystemView = field(default_factory=FilesystemView)
    base_image: Optional[str] = None
    user: str = ROOT_USER
    workdir: str = "/"
    exposed_ports: List[int] = field(default_factory=list)
    entrypoint: List[str] = field(default_factory=list)

    def apply(self, step: "PreparedStep", delta: LayerDelta) -> None:
        """
        Commits a step's delta and metadata before the next step begins.
        """
        inst = step.instruction
        self.view.apply(delta)
        if isinstance(inst, FetchBase):
            self.base_image = inst.image_ref
            if step.base_config is not None:
                self.user = step.base_config.user
                self.workdir = step.base_config.workdir
                self.exposed_ports = list(step.base_config.exposed_ports)
                self.entrypoint = list(step.base_config.entrypoint)
        elif isinstance(inst, SetUser):
            self.user = inst.uid
        elif isinstance(inst, SetWorkdir):
            self.workdir = '/' + normalize_path(inst.path, self.workdir)
        elif isinstance(inst, ExposePort):
            if inst.port not in self.exposed_ports:
                self.exposed_ports.append(inst.port)
        elif isinstance(inst, SetEntrypoint):
            self.entrypoint = list(inst.argv)

    def to_config(self) -> ImageConfig:
        return ImageConfig(
            base_image=self.base_image,
            user=self.user,
            workdir=self.workdir,
            exposed_ports=tuple(self.exposed_ports),
            entrypoint=tuple(self.entrypoint),
        )


@dataclass
class PreparedStep:
    """
    Everything a step's content hash depends on, resolved before execution.
    ``delta`` is already known for instructions that need no execution.
    """
    index: int
    instruction: BuildInstruction
    inputs: List[List[str]] = field(default_factory=list)
    delta: Optional[LayerDelta] = None
    base_config: Optional[ImageConfig] = None


class InstructionExecutor:
    """
    Resolves and executes instructions for the image builder.
    """
    def __init__(self, context_dir: str, settings: StrataSettings,
                 resolve_base: Optional[BaseResolver] = None):
        """
        :param context_dir: Build context root; COPY sources are resolved here.
        :param settings: Settings (privileged commands, timeouts, env).
        :param resolve_base: Looks up base images by reference.
        """
        self.context_dir = Path(context_dir).resolve()
        if not self.context_dir.is_dir():
            raise MissingDependencyFailure(str(context_dir), message=f"build context not found: {context_dir}")
        self.settings = settings
        self.resolve_base = resolve_base
        ignore_path = self.context_dir / settings.ignore_file
        self.ignore = IgnoreRules.from_file(str(ignore_path)) if ignore_path.is_file() else IgnoreRules()

    def prepare(self, index: int, instruction: BuildInstruction, state: BuildState) -> PreparedStep:
        """
        Resolves referenced content (base image, COPY sources) for hashing.

        :raises GlobMatchFailure: If a COPY source matches nothing.
        :raises MissingDependencyFailure: If the base image is unknown.
        """
        if isinstance(instruction, FetchBase):
            return self._prepare_base(index, instruction)
        if isinstance(instruction, CopyFiles):
            files = self._plan_copy(index, instruction, state)
            inputs = [[path, entry.digest, oct(entry.mode), entry.owner]
                      for path, entry in sorted(files.items())]
            return PreparedStep(index, instruction, inputs=inputs, delta=LayerDelta(files=files))
        if isinstance(instruction, RunCommand):
            return PreparedStep(index, instruction)
        # metadata only
        return PreparedStep(index, instruction, delta=LayerDelta())

    def execute(self, step: PreparedStep, state: BuildState) -> LayerDelta:
        """
        Produces the step's filesystem delta, running commands when needed.
        """
        if step.delta is not None:
            return step.delta
        if isinstance(step.instruction, RunCommand):
            return self._run(step.index, step.instruction, state)
        raise TypeError(f"Cannot execute {step.instruction.directive}")

    def _prepare_base(self, index: int, inst: FetchBase) -> PreparedStep:
        if inst.image_ref == SCRATCH:
            return PreparedStep(index, inst, inputs=[["base", SCRATCH]], delta=LayerDelta())

        resolved = self.resolve_base(inst.image_ref) if self.resolve_base else None
        if resolved is None:
            raise MissingDependencyFailure(
                inst.image_ref, index=index,
                message=f"base image '{inst.image_ref}' not found locally or in the registry")
        manifest, view = resolved
        files = {path: view.get(path) for path in view.paths}
        return PreparedStep(
            index, inst,
            inputs=[["base", manifest.digest]],
            delta=LayerDelta(files=files),
            base_config=manifest.config,
        )

    def _plan_copy(self, index: int, inst: CopyFiles, state: BuildState) -> Dict[str, FileEntry]:
        """
        Maps destination paths to file entries for a COPY.
        """
        pattern = inst.source_glob
        if pattern.startswith('/') or '..' in pattern.split('/'):
            raise GlobMatchFailure(index, pattern, "source is outside the build context")
        pattern = posixpath.normpath(pattern)

        if pattern == '.':
            matches = [self.context_dir]
        else:
            matches = sorted(self.context_dir.glob(pattern))
        owner = user_name(inst.chown) if inst.chown else ROOT_USER
        sources: List[tuple] = []
        for match in matches:
            rel_match = match.relative_to(self.context_dir).as_posix()
            if rel_match != '.' and self.ignore.matches(rel_match):
                continue
            if match.is_dir():
                for file_path in self._walk(match):
                    sources.append((file_path.relative_to(match).as_posix(), file_path))
            elif match.is_file():
                sources.append((match.name, match))

        if not sources:
            raise GlobMatchFailure(index, inst.source_glob)

        dest = normalize_path(inst.dest_path, state.workdir)
        single_file = len(matches) == 1 and matches[0].is_file()
        into_dir = (inst.dest_path.endswith('/') or inst.dest_path in ('.', './')
                    or state.view.is_dir(dest) or not single_file)

        files: Dict[str, FileEntry] = {}
        for rel, source in sources:
            target = posixpath.join(dest, rel) if into_dir else dest
            target = target.lstrip('/')
            st = source.stat()
            files[target] = FileEntry(data=source.read_bytes(), mode=stat.S_IMODE(st.st_mode), owner=owner)
        return files

    def _walk(self, directory: Path) -> List[Path]:
        found = []
        for base, dirs, filenames in os.walk(directory):
            base_path = Path(base)
            dirs[:] = sorted(d for d in dirs
                             if not self.ignore.matches((base_path / d).relative_to(self.context_dir).as_posix()))
            for name in sorted(filenames):
                path = base_path / name
                if self.ignore.matches(path.relative_to(self.context_dir).as_posix()):
                    continue
                if path.is_file():
                    found.append(path)
        return found

    def _privileged_program(self, inst: RunCommand) -> Optional[str]:
        """
        Returns the first program on the command line that needs root.
        """
        if inst.shell:
            try:
                tokens = shlex.split(inst.argv[-1])
            except ValueError:
                tokens = inst.argv[-1].split()
        else:
            tokens = list(inst.argv)

        privileged = set(self.settings.privileged_commands)
        expect_command = True
        for token in tokens:
            if token in COMMAND_SEPARATORS:
                expect_command = True
                continue
            if expect_command:
                if '=' in token and not token.startswith('='):
                    # VAR=value prefix
                    continue
                if os.path.basename(token) in privileged:
                    return token
                expect_command = False
        return None

    def _run(self, index: int, inst: RunCommand, state: BuildState) -> LayerDelta:
        program = self._privileged_program(inst)
        if program and not is_privileged(state.user):
            raise PermissionFailure(index, state.user, f"'{program}' requires root")
        if program:
            # only the working directory lives in the staged root
            logger.warning("step %d: '%s' runs on the host and may change it outside the image",
                           index, program)

        with tempfile.TemporaryDirectory(prefix="strata-run-") as tmp:
            root = Path(tmp)
            state.view.materialize(root)
            cwd = root / state.workdir.lstrip('/')
            cwd.mkdir(parents=True, exist_ok=True)

            env = {key: os.environ[key] for key in self.settings.env_passthrough if key in os.environ}
            env.update({"HOME": str(cwd), "USER": state.user, "STRATA_ROOTFS": str(root)})

            logger.debug("Running %s in %s as %s", list(inst.argv), state.workdir, state.user)
            try:
                result = subprocess.run(
                    list(inst.argv),
                    cwd=cwd,
                    env=env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                    timeout=self.settings.run_timeout,
                    shell=False,
                )
            except FileNotFoundError as e:
                raise BuildInstructionFailure(index, inst.render(), 127, str(e))
            except subprocess.TimeoutExpired as e:
                output = e.output.decode(errors="replace") if isinstance(e.output, bytes) else (e.output or "")
                raise BuildInstructionFailure(index, inst.render(), -1, output + "\ntimed out")

            for line in result.stdout.splitlines():
                logger.debug(" %s", line)
            if result.returncode != 0:
                raise BuildInstructionFailure(index, inst.render(), result.returncode, result.stdout)

            delta, touched = state.view.diff(root, owner=user_name(state.user))

        if not is_privileged(state.user):
            for path in touched:
                previous = state.view.get(path)
                if previous is not None and previous.owner != user_name(state.user):
                    raise PermissionFailure(
                        index, state.user, f"cannot modify /{path} owned by '{previous.owner}'")
        return delta
