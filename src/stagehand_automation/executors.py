from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union
import logging
import os
import shlex
import subprocess

from .errors import HostUnreachable
from .types import HostConfig

logger = logging.getLogger(__name__)

SSH_CONNECTION_FAILURE = 255


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


class Executor:
    """Base executor abstraction used by operations."""

    is_local = False

    def __init__(
        self,
        host: HostConfig,
        *,
        dry_run: bool = False,
        timeout: int = 10,
        become: bool = False,
        become_user: str = "root",
    ):
        self.host = host
        self.dry_run = dry_run
        self.timeout = timeout
        self.become = become
        self.become_user = become_user

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command`` and optionally skip it during dry-runs."""

        cmd_list = list(command)
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (check mode)", 0)

        argv = self._wrap(cmd_list, env=env, cwd=cwd)
        exec_env = None
        if env and self.is_local:
            exec_env = os.environ.copy()
            exec_env.update(env)

        logger.debug("host=%s run=%s", self.host.name, " ".join(argv))
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                check=False,
                env=exec_env,
                cwd=str(cwd) if cwd is not None and self.is_local else None,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            proc = subprocess.CompletedProcess(argv, 127, "", f"{exc.filename}: command not found")
        self._check_connection(proc)
        if check and proc.returncode != 0:
            raise subprocess.CalledProcessError(
                proc.returncode,
                cmd_list,
                proc.stdout,
                proc.stderr,
            )
        return CommandResult(cmd_list, proc.stdout, proc.stderr, proc.returncode)

    def ping(self) -> None:
        raise NotImplementedError

    def _wrap(
        self,
        command: list[str],
        *,
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
    ) -> list[str]:
        raise NotImplementedError

    def _become_prefix(self) -> list[str]:
        if not self.become:
            return []
        return ["sudo", "-n", "-u", self.become_user, "--"]

    def _check_connection(self, proc: subprocess.CompletedProcess) -> None:
        return None


class LocalExecutor(Executor):
    """Executor that acts directly on the local host."""

    is_local = True

    def ping(self) -> None:
        return None

    def _wrap(self, command, *, env, cwd):  # noqa: ARG002
        return self._become_prefix() + command


class SSHExecutor(Executor):
    """Executor that runs commands through the system ``ssh`` client."""

    def __init__(
        self,
        host: HostConfig,
        *,
        remote_user: Optional[str] = None,
        private_key_file: Optional[Path] = None,
        **kwargs,
    ):
        super().__init__(host, **kwargs)
        self.remote_user = host.user or remote_user
        self.private_key_file = private_key_file

    def ping(self) -> None:
        self.run(["true"], check=False, mutable=False)

    def ssh_argv(self) -> list[str]:
        argv = [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.timeout}",
        ]
        if self.host.port:
            argv += ["-p", str(self.host.port)]
        if self.private_key_file:
            argv += ["-i", str(self.private_key_file)]
        target = self.host.address or self.host.name
        if self.remote_user:
            target = f"{self.remote_user}@{target}"
        argv.append(target)
        return argv

    def _wrap(self, command, *, env, cwd):
        remote = self._become_prefix() + command
        if env:
            remote = ["env"] + [f"{key}={value}" for key, value in env.items()] + remote
        script = shlex.join(remote)
        if cwd is not None:
            script = f"cd {shlex.quote(str(cwd))} && {script}"
        return self.ssh_argv() + ["--", script]

    def _check_connection(self, proc: subprocess.CompletedProcess) -> None:
        if proc.returncode == SSH_CONNECTION_FAILURE:
            message = (proc.stderr or "").strip().splitlines()
            reason = message[-1] if message else "ssh connection failed"
            raise HostUnreachable(self.host.name, reason)
