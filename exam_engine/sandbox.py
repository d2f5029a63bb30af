"""
Code execution for student submissions.

Defines the CodeExecutor contract the grader depends on, and
SubprocessExecutor, which runs each submission in a fresh interpreter inside
its own temporary directory.
Unix: Uses resource module for CPU time and memory limits.
Windows: Uses timeout parameter (wall-clock time only).
"""

import sys
import time
import subprocess
import platform
import tempfile
import shutil
from dataclasses import dataclass
from pathlib import Path

from .errors import ExecutorUnavailable


@dataclass
class ExecutionOutcome:
    """
    Result of one run.

    status is one of "success", "timeout", "runtime_error", "memory_error".
    """
    status: str
    stdout: str
    stderr: str
    duration_ms: int


class CodeExecutor:
    """
    Contract for anything that runs a submission against one stdin.

    Implementations must be deterministic for a given (code, stdin), must
    return within roughly timeout_sec, and must not leak state between calls.
    Raise ExecutorUnavailable when the run could not be attempted at all.
    """

    def run(self, code: str, input_str: str, timeout_sec: float) -> ExecutionOutcome:
        raise NotImplementedError


def get_python_executable():
    """Get the appropriate Python executable path."""
    if getattr(sys, 'frozen', False):
        python_path = shutil.which('python')
        if not python_path:
            python_path = shutil.which('python3')

        if python_path:
            return python_path, ['-I', '-B']
        raise ExecutorUnavailable("Python executable not found. Please ensure Python is installed on the exam machines.")
    return sys.executable, ['-I', '-B']


class SubprocessExecutor(CodeExecutor):
    """Runs Python source in an isolated interpreter process (-I -B)."""

    def __init__(self, memory_limit_mb: int = 256, python_exe: str = None):
        self.memory_limit_mb = memory_limit_mb
        if python_exe:
            self.python_exe, self.isolation_flags = python_exe, ['-I', '-B']
        else:
            self.python_exe, self.isolation_flags = get_python_executable()

    def _limits(self, timeout_sec: float):
        memory_limit_mb = self.memory_limit_mb

        def set_limits():
            try:
                import resource
                # Set CPU time limit
                try:
                    resource.setrlimit(resource.RLIMIT_CPU, (int(timeout_sec) + 1, int(timeout_sec) + 1))
                except (ValueError, OSError):
                    pass

                # Set memory limit (bytes)
                try:
                    memory_bytes = memory_limit_mb * 1024 * 1024
                    resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
                except (ValueError, OSError):
                    pass
            except ImportError:
                pass

        return set_limits

    def run(self, code: str, input_str: str, timeout_sec: float) -> ExecutionOutcome:
        """
        Run code with input_str on stdin.

        Args:
            code: The student's Python source
            input_str: Input to feed via stdin
            timeout_sec: Timeout in seconds

        Returns:
            ExecutionOutcome with status, stdout, stderr and duration

        Raises:
            ExecutorUnavailable: If the interpreter could not be started
        """
        start_time = time.monotonic()

        with tempfile.TemporaryDirectory() as temp_dir:
            code_path = Path(temp_dir) / "solution.py"
            code_path.write_text(code, encoding='utf-8')

            command = [self.python_exe, *self.isolation_flags, str(code_path)]
            kwargs = dict(
                input=input_str.encode('utf-8'),
                capture_output=True,
                check=False,
                cwd=temp_dir,
            )

            try:
                if platform.system() != "Windows":
                    # Unix-like systems: rlimits plus a fallback wall-clock timeout
                    proc = subprocess.run(
                        command,
                        timeout=timeout_sec * 2,
                        preexec_fn=self._limits(timeout_sec),
                        **kwargs
                    )
                else:
                    proc = subprocess.run(command, timeout=timeout_sec, **kwargs)
            except subprocess.TimeoutExpired:
                return ExecutionOutcome("timeout", "", "Process exceeded time limit", self._elapsed(start_time))
            except MemoryError:
                return ExecutionOutcome("memory_error", "", "Memory limit exceeded", self._elapsed(start_time))
            except OSError as e:
                raise ExecutorUnavailable(f"Could not start interpreter: {e}") from e

            stdout = proc.stdout.decode('utf-8', errors='replace')
            stderr = proc.stderr.decode('utf-8', errors='replace')
            elapsed_ms = self._elapsed(start_time)

            if 'MemoryError' in stderr:
                return ExecutionOutcome("memory_error", stdout, stderr, elapsed_ms)

            if proc.returncode == 0:
                return ExecutionOutcome("success", stdout, stderr, elapsed_ms)

            # Killed by RLIMIT_CPU shows up as a negative return code (SIGXCPU/SIGKILL)
            if proc.returncode < 0:
                return ExecutionOutcome("timeout", stdout, "Process exceeded time limit", elapsed_ms)
            return ExecutionOutcome("runtime_error", stdout, stderr, elapsed_ms)

    @staticmethod
    def _elapsed(start_time: float) -> int:
        return int((time.monotonic() - start_time) * 1000)
