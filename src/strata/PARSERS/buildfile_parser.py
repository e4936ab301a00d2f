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
Parser for build manifests: one ``DIRECTIVE arg...`` per logical line.
"""
import json
import os
import re
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from ..MODELS.buildfile_ast import BuildfileAST, Directive
from ..MODELS.instructions import (BuildInstruction, CopyFiles, ExposePort, FetchBase, RunCommand,
                                   SetEntrypoint, SetUser, SetWorkdir)
from ..UTILS.errors import ManifestSyntaxError, MissingDependencyFailure

DIRECTIVE_PATTERN = re.compile(r'^([A-Za-z]+)(?:\s+(.*))?$')


class BuildfileParser:
    """
    Parser for build manifests (FROM, RUN, COPY, USER, WORKDIR, EXPOSE, CMD).
    """
    def parse(self, buildfile_path: str) -> List[BuildInstruction]:
        """
        Parses a manifest from a file path.

        Args:
            buildfile_path (str): Path to the manifest.

        Returns:
            List[BuildInstruction]: Instructions in manifest order.

        Raises:
            MissingDependencyFailure: If the file does not exist.
        """
        if not os.path.isfile(buildfile_path):
            raise MissingDependencyFailure(buildfile_path, message=f"manifest not found: {buildfile_path}")
        with open(buildfile_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> List[BuildInstruction]:
        """
        Parses a manifest from a string.

        Args:
            content (str): Manifest text.

        Returns:
            List[BuildInstruction]: Instructions in manifest order.

        Raises:
            ManifestSyntaxError: On any grammar violation, with its line number.
        """
        ast = self.parse_ast(content)
        if not ast.directives:
            raise ManifestSyntaxError("manifest contains no instructions")

        instructions = [self._convert(d) for d in ast.directives]
        if not isinstance(instructions[0], FetchBase):
            raise ManifestSyntaxError("first instruction must be FROM", line=ast.directives[0].line)
        for directive, instruction in zip(ast.directives[1:], instructions[1:]):
            if isinstance(instruction, FetchBase):
                raise ManifestSyntaxError("only a single FROM is supported", line=directive.line)
        return instructions

    def parse_ast(self, content: str) -> BuildfileAST:
        """
        Splits the manifest into directives without interpreting arguments.
        """
        directives = []
        for line_no, text in self._logical_lines(content):
            match = DIRECTIVE_PATTERN.match(text)
            if not match:
                raise ManifestSyntaxError(f"cannot parse '{text}'", line=line_no)
            directives.append(Directive(
                keyword=match.group(1).upper(),
                arguments=(match.group(2) or "").strip(),
                raw=text,
                line=line_no,
            ))
        return BuildfileAST(directives=directives)

    @staticmethod
    def _logical_lines(content: str) -> Iterator[Tuple[int, str]]:
        """
        Yields (first line number, text) with comments dropped and ``\\``
        continuations joined.
        """
        parts: List[str] = []
        start: Optional[int] = None
        for number, line in enumerate(content.splitlines(), 1):
            stripped = line.strip()
            if not stripped or stripped.startswith('#'):
                continue
            if start is None:
                start = number
            if stripped.endswith('\\'):
                parts.append(stripped[:-1].strip())
                continue
            parts.append(stripped)
            yield start, " ".join(p for p in parts if p)
            parts, start = [], None
        if parts:
            yield start, " ".join(p for p in parts if p)

    def _convert(self, directive: Directive) -> BuildInstruction:
        handler = self._handlers().get(directive.keyword)
        if handler is None:
            raise ManifestSyntaxError(f"unknown instruction: {directive.keyword}", line=directive.line)
        if not directive.arguments:
            raise ManifestSyntaxError(f"{directive.keyword} requires at least one argument",
                                      line=directive.line)
        try:
            return handler(directive)
        except ValidationError as e:
            raise ManifestSyntaxError(
                f"invalid {directive.keyword}: {e.errors()[0]['msg']}", line=directive.line)

    def _handlers(self) -> Dict[str, Callable[[Directive], BuildInstruction]]:
        return {
            "FROM": self._from,
            "RUN": self._run,
            "COPY": self._copy,
            "USER": self._user,
            "WORKDIR": lambda d: SetWorkdir(path=d.arguments),
            "EXPOSE": self._expose,
            "CMD": self._cmd,
        }

    @staticmethod
    def _exec_form(arguments: str) -> Optional[List[str]]:
        """
        Returns the argv of a JSON exec form, or None for shell form.
        """
        if not (arguments.startswith('[') and arguments.endswith(']')):
            return None
        try:
            argv = json.loads(arguments)
        except json.JSONDecodeError:
            # Not valid JSON, treat as shell form
            return None
        if not isinstance(argv, list) or not all(isinstance(a, str) for a in argv):
            return None
        return argv

    def _from(self, d: Directive) -> FetchBase:
        tokens = d.arguments.split()
        if len(tokens) == 3 and tokens[1].upper() == "AS":
            raise ManifestSyntaxError("multi-stage builds are not supported", line=d.line)
        if len(tokens) != 1:
            raise ManifestSyntaxError("FROM takes exactly one image reference", line=d.line)
        return FetchBase(image_ref=tokens[0])

    def _run(self, d: Directive) -> RunCommand:
        argv = self._exec_form(d.arguments)
        if argv is None:
            return RunCommand.from_shell(d.arguments)
        if not argv:
            raise ManifestSyntaxError("RUN requires a command", line=d.line)
        return RunCommand(argv=tuple(argv))

    def _cmd(self, d: Directive) -> SetEntrypoint:
        argv = self._exec_form(d.arguments)
        if argv is None:
            return SetEntrypoint.from_shell(d.arguments)
        if not argv:
            raise ManifestSyntaxError("CMD requires a command", line=d.line)
        return SetEntrypoint(argv=tuple(argv))

    def _copy(self, d: Directive) -> CopyFiles:
        chown = None
        rest = d.arguments
        while rest.startswith("--"):
            flag, _, rest = rest.partition(" ")
            rest = rest.strip()
            if flag.startswith("--chown="):
                chown = flag[len("--chown="):]
                if not chown:
                    raise ManifestSyntaxError("--chown requires a user", line=d.line)
            else:
                raise ManifestSyntaxError(f"unsupported COPY flag {flag}", line=d.line)

        paths = self._exec_form(rest)
        if paths is None:
            paths = rest.split()
        if len(paths) != 2:
            raise ManifestSyntaxError("COPY takes exactly one source and one destination", line=d.line)
        return CopyFiles(source_glob=paths[0], dest_path=paths[1], chown=chown)

    def _user(self, d: Directive) -> SetUser:
        tokens = d.arguments.split()
        if len(tokens) != 1:
            raise ManifestSyntaxError("USER takes exactly one user", line=d.line)
        return SetUser(uid=tokens[0])

    def _expose(self, d: Directive) -> ExposePort:
        tokens = d.arguments.split()
        if len(tokens) != 1:
            raise ManifestSyntaxError("EXPOSE takes exactly one port", line=d.line)
        port, _, protocol = tokens[0].partition("/")
        if protocol and protocol.lower() not in ("tcp", "udp"):
            raise ManifestSyntaxError(f"unknown protocol {protocol}", line=d.line)
        if not (port.isascii() and port.isdigit()):
            raise ManifestSyntaxError(f"invalid port '{tokens[0]}'", line=d.line)
        return ExposePort(port=int(port))
