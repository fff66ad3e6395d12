"""
ScriptRunner: run a submitted Python script in an isolated subprocess.

Isolation:
- fresh interpreter (``-S -s -B``): no site-packages, no user site, no .pyc;
  only stdlib plus the allow-listed SCRIPT_MODULE_PATH (via PYTHONPATH)
- environment built from scratch: connection variables only, nothing from
  the parent process
- address-space ceiling (RLIMIT_AS) set inside the child before the script runs
- unique temp working directory, always removed afterwards
- wall-clock timeout: SIGTERM, first resolution wins

Exit, spawn error and timeout race each other; an explicit resolved flag under
a lock decides the single outcome and later events are ignored.
"""

import logging
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from dbportal.core.config import settings
from dbportal.core.errors import error_message
from dbportal.schemas_portal import ExecutionResult

_log = logging.getLogger(__name__)

STDERR_SEPARATOR = "\n--- stderr ---\n"

# Runs inside the child: apply the memory ceiling, then execute the script as __main__.
_BOOTSTRAP = """\
import sys
try:
    import resource
except ImportError:
    resource = None
limit = int(sys.argv[1])
if resource is not None and limit > 0:
    resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
script = sys.argv[2]
sys.argv = [script]
import runpy
runpy.run_path(script, run_name="__main__")
"""


@dataclass(frozen=True)
class ScriptDbConfig:
    """Connection details injected into the script environment."""

    database_type: str
    database_name: str
    postgres_url: str | None = None
    mongo_url: str | None = None


class _Outcome:
    """Single-assignment result shared by the exit, error and timeout paths."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._resolved = False
        self._result: ExecutionResult | None = None

    @property
    def resolved(self) -> bool:
        with self._lock:
            return self._resolved

    def settle(self, result: ExecutionResult) -> bool:
        """Store *result* if nothing has been stored yet. Returns True if it won."""
        with self._lock:
            if self._resolved:
                return False
            self._resolved = True
            self._result = result
        self._done.set()
        return True

    def wait(self) -> ExecutionResult:
        self._done.wait()
        assert self._result is not None
        return self._result


class ScriptRunner:
    """
    run(script, db_config) -> ExecutionResult. Never raises.
    """

    def __init__(
        self,
        *,
        timeout_ms: int | None = None,
        max_memory_mb: int | None = None,
        module_path: str | None = None,
        python_executable: str | None = None,
        popen: Callable[..., Any] = subprocess.Popen,
    ) -> None:
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.SCRIPT_TIMEOUT_MS
        self.max_memory_mb = (
            max_memory_mb if max_memory_mb is not None else settings.SCRIPT_MAX_MEMORY_MB
        )
        self.module_path = (
            module_path if module_path is not None else settings.SCRIPT_MODULE_PATH
        ).strip()
        self.python_executable = python_executable or sys.executable
        self._popen = popen

    def run(self, script: str, db_config: ScriptDbConfig) -> ExecutionResult:
        start = time.monotonic()
        temp_dir: str | None = None
        try:
            temp_dir = tempfile.mkdtemp(prefix="db-portal-script-")
            script_path = os.path.join(temp_dir, "script.py")
            with open(script_path, "w", encoding="utf-8") as f:
                f.write(script)

            result = self._run_process(script_path, temp_dir, self.build_env(db_config))
            _log.info(
                "Script executed success=%s duration_ms=%d",
                result.success,
                int((time.monotonic() - start) * 1000),
            )
            return result
        except Exception as e:
            msg = error_message(e)
            _log.error(
                "Script execution failed: %s duration_ms=%d",
                msg,
                int((time.monotonic() - start) * 1000),
            )
            return ExecutionResult.failed(msg)
        finally:
            if temp_dir:
                shutil.rmtree(temp_dir, ignore_errors=True)

    def build_env(self, db_config: ScriptDbConfig) -> dict[str, str]:
        """The complete child environment; nothing is inherited from os.environ."""
        env = {
            "POSTGRES_URL": db_config.postgres_url or "",
            "MONGODB_URL": db_config.mongo_url or "",
            "DATABASE_NAME": db_config.database_name,
            "DATABASE_TYPE": db_config.database_type,
            "PYTHONIOENCODING": "utf-8",
            "PYTHONDONTWRITEBYTECODE": "1",
            "PYTHONNOUSERSITE": "1",
        }
        if self.module_path:
            env["PYTHONPATH"] = self.module_path
        return env

    def command(self, script_path: str) -> list[str]:
        memory_bytes = max(self.max_memory_mb, 0) * 1024 * 1024
        return [
            self.python_executable,
            "-S",
            "-s",
            "-B",
            "-c",
            _BOOTSTRAP,
            str(memory_bytes),
            script_path,
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_process(self, script_path: str, cwd: str, env: dict[str, str]) -> ExecutionResult:
        try:
            proc = self._popen(
                self.command(script_path),
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except Exception as e:
            return ExecutionResult.failed(error_message(e))

        outcome = _Outcome()
        timer = threading.Timer(self.timeout_ms / 1000.0, self._on_timeout, args=(proc, outcome))
        timer.daemon = True
        reader = threading.Thread(
            target=self._collect, args=(proc, outcome), name="script-reader", daemon=True
        )
        timer.start()
        reader.start()
        try:
            return outcome.wait()
        finally:
            timer.cancel()

    def _collect(self, proc: Any, outcome: _Outcome) -> None:
        try:
            stdout, stderr = proc.communicate()
        except Exception as e:
            outcome.settle(ExecutionResult.failed(error_message(e)))
            return
        outcome.settle(self._exit_result(proc.returncode, stdout or "", stderr or ""))

    def _on_timeout(self, proc: Any, outcome: _Outcome) -> None:
        if outcome.resolved:
            return
        try:
            proc.send_signal(signal.SIGTERM)
        except (ProcessLookupError, OSError):
            pass
        if outcome.settle(
            ExecutionResult.failed(f"Script execution timed out after {self.timeout_ms}ms")
        ):
            _log.warning("Script killed after timeout_ms=%d", self.timeout_ms)

    @staticmethod
    def _exit_result(code: int | None, stdout: str, stderr: str) -> ExecutionResult:
        if code == 0:
            output = stdout + (STDERR_SEPARATOR + stderr if stderr else "")
            return ExecutionResult.ok(output)
        return ExecutionResult.failed(
            stderr or f"Process exited with code {code}",
            output=stdout or None,
        )
