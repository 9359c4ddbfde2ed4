import subprocess
import tempfile
import os
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from config.settings import settings

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
SPAWN_FAILURE_EXIT_CODE = 127


class ScriptWrapper:
    """Prepends the strict-mode, non-interactive preamble to every script."""

    PREAMBLE = (
        "#!/bin/bash\n"
        "set -euo pipefail\n"
        "export DEBIAN_FRONTEND=noninteractive\n"
        "export NEEDRESTART_MODE=a\n"
    )

    def wrap(self, script: str) -> str:
        return f"{self.PREAMBLE}\n{script}\n"


class ExecutionTarget:
    """Where a wrapped script runs. Subclasses build the argv and env."""

    def command(self, script_path: Optional[str] = None) -> List[str]:
        raise NotImplementedError

    def environment(self) -> Dict[str, str]:
        return os.environ.copy()

    def describe(self) -> str:
        raise NotImplementedError


class LocalTarget(ExecutionTarget):
    def command(self, script_path: Optional[str] = None) -> List[str]:
        if script_path:
            return ["bash", script_path]
        return ["bash", "-s"]

    def describe(self) -> str:
        return "local"


class RemoteTarget(ExecutionTarget):
    """Runs the script on a remote host over ssh, fed through stdin.

    The password never appears on the command line: ``sshpass -e`` reads it
    from the ``SSHPASS`` environment variable.
    """

    def __init__(self, host: str, username: str, password: str, port: int = 22):
        self.host = host
        self.username = username
        self.password = password
        self.port = port

    def command(self, script_path: Optional[str] = None) -> List[str]:
        return [
            "sshpass", "-e",
            "ssh",
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "LogLevel=ERROR",
            "-p", str(self.port),
            f"{self.username}@{self.host}",
            "bash -s",
        ]

    def environment(self) -> Dict[str, str]:
        env = super().environment()
        env["SSHPASS"] = self.password or ""
        return env

    def describe(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


LOCAL = LocalTarget()


@dataclass
class ExecutionResult:
    script: str
    output: str
    error_output: str
    exit_code: int
    timed_out: bool = False

    @property
    def successful(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> dict:
        return {
            "script": self.script,
            "output": self.output,
            "error_output": self.error_output,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "successful": self.successful,
        }


class ScriptEngine:
    def __init__(
        self,
        wrapper: Optional[ScriptWrapper] = None,
        timeout: int = 300,
        work_dir: Optional[str] = None,
    ):
        self.wrapper = wrapper or ScriptWrapper()
        self.timeout = timeout
        self.work_dir = work_dir or settings.SCRIPT_WORK_DIR
        self.ensure_directories()

    def ensure_directories(self):
        """Ensure the scratch directory for script files exists"""
        os.makedirs(self.work_dir, exist_ok=True)

    def execute(
        self,
        script: str,
        target: ExecutionTarget = LOCAL,
        timeout: Optional[int] = None,
    ) -> ExecutionResult:
        """
        Wrap the script, write it to a temp file and run it.

        Remote targets cannot see the local file, so for them the file
        content is streamed over stdin instead.
        """
        wrapped = self.wrapper.wrap(script)
        timeout = timeout or self.timeout

        with tempfile.NamedTemporaryFile(
            mode='w', suffix='.sh', dir=self.work_dir, delete=False
        ) as script_file:
            script_file.write(wrapped)
            script_path = script_file.name
        os.chmod(script_path, 0o700)

        try:
            if isinstance(target, LocalTarget):
                return self._run(target.command(script_path), wrapped, target, timeout)
            with open(script_path, 'r') as handle:
                return self._run(target.command(), wrapped, target, timeout, stdin=handle.read())
        finally:
            if os.path.exists(script_path):
                os.unlink(script_path)

    def execute_via_stdin(
        self,
        script: str,
        target: ExecutionTarget = LOCAL,
        timeout_seconds: int = 900,
    ) -> ExecutionResult:
        """Wrap the script and stream it to the target shell's stdin."""
        wrapped = self.wrapper.wrap(script)
        return self._run(target.command(), wrapped, target, timeout_seconds, stdin=wrapped)

    def _run(
        self,
        cmd: List[str],
        wrapped: str,
        target: ExecutionTarget,
        timeout: int,
        stdin: Optional[str] = None,
    ) -> ExecutionResult:
        logger.info(f"Executing script on {target.describe()} (timeout {timeout}s)")

        try:
            result = subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                text=True,
                env=target.environment(),
                timeout=timeout
            )
        except subprocess.TimeoutExpired as e:
            # subprocess.run kills the child before re-raising
            logger.warning(f"Script on {target.describe()} timed out after {timeout}s")
            return ExecutionResult(
                script=wrapped,
                output=_as_text(e.stdout),
                error_output=f"{_as_text(e.stderr)}Script execution timed out after {timeout} seconds",
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )
        except OSError as e:
            logger.error(f"Could not start script on {target.describe()}: {e}")
            return ExecutionResult(
                script=wrapped,
                output="",
                error_output=f"Execution error: {e}",
                exit_code=SPAWN_FAILURE_EXIT_CODE,
            )

        if result.returncode != 0:
            logger.warning(f"Script on {target.describe()} exited with {result.returncode}")

        return ExecutionResult(
            script=wrapped,
            output=result.stdout,
            error_output=result.stderr,
            exit_code=result.returncode,
        )


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value


# Global instance
script_engine = ScriptEngine(timeout=settings.SCRIPT_TIMEOUT)
