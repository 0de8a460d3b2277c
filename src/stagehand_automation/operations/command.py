from __future__ import annotations

import logging
import shlex
from typing import Any, Optional, Sequence

from .base import Operation
from ..executors import CommandResult, Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)


class CommandOperation(Operation):
    """Run a command without a shell, guarded by ``creates``/``removes``."""

    action = "command"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_command = spec.get("cmd") or spec.get("argv")
        if not raw_command:
            raise ValueError(f"{self.action} operation requires a command")
        self.raw_command = raw_command
        self.chdir = str(spec["chdir"]) if spec.get("chdir") else None
        self.creates = str(spec["creates"]) if spec.get("creates") else None
        self.removes = str(spec["removes"]) if spec.get("removes") else None
        env = spec.get("environment") or {}
        if not isinstance(env, dict):
            raise ValueError(f"{self.action} environment must be a mapping")
        self.env = {str(k): str(v) for k, v in env.items()} or None

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        command = self.build_command()
        if self.creates and self._exists(executor, self.creates):
            return self._skipped(host, f"skipped, since {self.creates} exists")
        if self.removes and not self._exists(executor, self.removes):
            return self._skipped(host, f"skipped, since {self.removes} does not exist")

        result = executor.run(command, check=False, mutable=True, env=self.env, cwd=self.chdir)
        data = {
            "cmd": command,
            "rc": result.returncode,
            "stdout": result.stdout,
            "stderr": result.stderr,
        }
        if result.returncode != 0:
            logger.debug("command failed rc=%s cmd=%s", result.returncode, " ".join(command))
            return ActionResult(
                host=host.name,
                action=self.action,
                changed=False,
                details=_error_detail(result),
                failed=True,
                data=data,
            )
        detail = "skipped (check mode)" if executor.dry_run else f"ran (rc={result.returncode})"
        return ActionResult(host=host.name, action=self.action, changed=True, details=detail, data=data)

    def build_command(self) -> list[str]:
        if isinstance(self.raw_command, str):
            return shlex.split(self.raw_command)
        if isinstance(self.raw_command, Sequence):
            return [str(part) for part in self.raw_command]
        raise ValueError(f"{self.action} command must be a string or list")

    def _skipped(self, host: HostConfig, detail: str) -> ActionResult:
        return ActionResult(host=host.name, action=self.action, changed=False, details=detail)

    @staticmethod
    def _exists(executor: Executor, path: str) -> bool:
        result = executor.run(["test", "-e", path], check=False, mutable=False)
        return result.returncode == 0


class ShellOperation(CommandOperation):
    """Run a command through ``/bin/sh -c``."""

    action = "shell"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.executable = str(spec.get("executable") or "/bin/sh")

    def build_command(self) -> list[str]:
        if isinstance(self.raw_command, str):
            script = self.raw_command
        else:
            script = " ".join(shlex.quote(str(part)) for part in self.raw_command)
        return [self.executable, "-c", script]


def _error_detail(result: CommandResult) -> str:
    message = _summarize_output(result)
    prefix = f"rc={result.returncode}"
    if message:
        return f"{prefix}: {message}"
    return prefix


def _summarize_output(result: CommandResult) -> Optional[str]:
    for text in (result.stderr, result.stdout):
        if not text:
            continue
        stripped = text.strip()
        if not stripped:
            continue
        line = stripped.splitlines()[0]
        return (line[:157] + "...") if len(line) > 160 else line
    return None
