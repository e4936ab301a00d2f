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
Execution of container entrypoints with log redirection and lifecycle management.
"""
import os
import subprocess
from typing import IO, Dict, List, Optional

from ..UTILS.errors import MissingDependencyFailure
from ..UTILS.logging import get_logger

logger = get_logger(__name__)


class ProcessRunner:
    """
    Manages the execution of a single container process.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process, usually the container id.
            log_file (Optional[str]): Path to a file where stdout/stderr will be redirected.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[subprocess.Popen] = None
        self.log_handle: Optional[IO[str]] = None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None,
              interactive: bool = False) -> int:
        """
        Starts the process.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Complete environment of the process.
            working_dir (Optional[str]): Directory to start the process in.
            interactive (bool): Attach the caller's terminal instead of the log file.

        Returns:
            int: PID of the started process.

        Raises:
            MissingDependencyFailure: If the executable does not exist.
        """
        if not command:
            raise ValueError(f"[{self.name}] empty command")

        if working_dir and not os.path.exists(working_dir):
            os.makedirs(working_dir, exist_ok=True)

        stdin = None
        stdout = None
        stderr = None
        if interactive:
            # inherit the terminal
            pass
        elif self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self.log_handle = open(self.log_file, 'a')
            stdin = subprocess.DEVNULL
            stdout = self.log_handle
            stderr = subprocess.STDOUT
        else:
            stdin = subprocess.DEVNULL

        logger.info("[%s] Starting command: %s", self.name, ' '.join(command))

        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdin=stdin,
                stdout=stdout,
                stderr=stderr,
                text=True,
                shell=False,
            )
        except FileNotFoundError as e:
            self._close_log()
            raise MissingDependencyFailure(command[0], message=f"executable not found: {command[0]} ({e})")
        except OSError:
            self._close_log()
            logger.error("[%s] Failed to start", self.name)
            raise
        return self.process.pid

    def stop(self, timeout: float = 10):
        """
        Stops the process by sending SIGTERM, followed by SIGKILL if it doesn't stop.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        if self.process and self.process.poll() is None:
            logger.info("[%s] Stopping process...", self.name)
            self.process.terminate()
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("[%s] Process did not terminate, killing...", self.name)
                self.process.kill()
                self.process.wait()
        self._close_log()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Blocks until the process exits.

        Returns:
            Optional[int]: Exit code, or None if no process was started.
        """
        if self.process is None:
            return None
        code = self.process.wait(timeout=timeout)
        self._close_log()
        return code

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.

        Returns:
            bool: True if running, False otherwise.
        """
        return self.process is not None and self.process.poll() is None

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process.

        Returns:
            Optional[int]: Exit code if process finished, None otherwise.
        """
        if self.process:
            return self.process.poll()
        return None

    def _close_log(self):
        if self.log_handle is not None:
            self.log_handle.close()
            self.log_handle = None
