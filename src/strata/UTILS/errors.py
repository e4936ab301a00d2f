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
Exception hierarchy for build-time and run-time failures.

Build-time failures carry the index of the instruction that failed. None of
these errors is retried automatically: every build, push or run is an explicit
user action.
"""
from typing import Any, Dict, Optional


class StrataError(Exception):
    """Base exception for strata."""

    def __init__(self, message: str, code: str = "UNKNOWN_ERROR",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used by the CLI and in logs."""
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(StrataError):
    """Configuration could not be loaded or validated."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        details = {"config_key": config_key} if config_key else {}
        super().__init__(message, code="CONFIG_ERROR", details=details)


class ManifestSyntaxError(StrataError):
    """The build manifest does not follow the directive grammar."""

    def __init__(self, message: str, line: Optional[int] = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message, code="MANIFEST_SYNTAX", details={"line": line})


class BuildFailure(StrataError):
    """A build aborted at a given instruction."""

    def __init__(self, message: str, index: int, code: str = "BUILD_FAILED",
                 details: Optional[Dict[str, Any]] = None):
        self.index = index
        details = dict(details or {})
        details["index"] = index
        super().__init__(f"step {index}: {message}", code=code, details=details)


class BuildInstructionFailure(BuildFailure):
    """A RUN step exited non-zero."""

    def __init__(self, index: int, instruction: str, exit_code: int, output: str = ""):
        self.instruction = instruction
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            f"'{instruction}' returned a non-zero code: {exit_code}",
            index,
            code="INSTRUCTION_FAILED",
            details={"instruction": instruction, "exit_code": exit_code, "output": output},
        )


class PermissionFailure(BuildFailure):
    """The active user lacks a privilege the instruction needs."""

    def __init__(self, index: int, user: str, reason: str):
        self.user = user
        self.reason = reason
        super().__init__(
            f"permission denied for user '{user}': {reason}",
            index,
            code="PERMISSION_DENIED",
            details={"user": user, "reason": reason},
        )


class GlobMatchFailure(BuildFailure):
    """A COPY source pattern selected no files."""

    def __init__(self, index: int, pattern: str, reason: str = "no source files were specified"):
        self.pattern = pattern
        super().__init__(
            f"COPY failed for '{pattern}': {reason}",
            index,
            code="GLOB_NO_MATCH",
            details={"pattern": pattern},
        )


class MissingDependencyFailure(StrataError):
    """A referenced image, program or module is absent."""

    def __init__(self, dependency: str, index: Optional[int] = None, message: Optional[str] = None):
        self.dependency = dependency
        self.index = index
        text = message or f"missing dependency: {dependency}"
        if index is not None:
            text = f"step {index}: {text}"
        super().__init__(
            text,
            code="MISSING_DEPENDENCY",
            details={"dependency": dependency, "index": index},
        )


class NetworkBindFailure(StrataError):
    """A port is already in use or cannot be bound."""

    def __init__(self, port: int, host: str = "", reason: str = "address already in use"):
        self.port = port
        self.host = host
        super().__init__(
            f"cannot bind {host or '*'}:{port}: {reason}",
            code="NETWORK_BIND",
            details={"port": port, "host": host},
        )


class ImageNotFoundError(StrataError):
    """No image is known under the given reference."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(
            f"Image not found: {reference}",
            code="IMAGE_NOT_FOUND",
            details={"reference": reference},
        )


class LayerIntegrityError(StrataError):
    """A stored layer payload does not match its recorded digest."""

    def __init__(self, content_hash: str, expected: str, actual: str):
        super().__init__(
            f"Layer digest mismatch for {content_hash}: expected {expected}, got {actual}",
            code="LAYER_CORRUPT",
            details={"content_hash": content_hash, "expected": expected, "actual": actual},
        )
