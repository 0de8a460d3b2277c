from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass
from typing import Any, Optional

from .base import Operation
from ..errors import OperationError
from ..executors import CommandResult, Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)

REQUIREMENT_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)(\[[^\]]*\])?\s*(.*)$")


@dataclass
class Requirement:
    raw: str
    name: str
    pinned: Optional[str] = None

    @classmethod
    def parse(cls, text: str, version: Optional[str] = None) -> "Requirement":
        match = REQUIREMENT_RE.match(text)
        if not match:
            raise ValueError(f"invalid package specifier '{text}'")
        name, specifier = match.group(1), match.group(3).strip()
        if version is not None:
            if specifier:
                raise ValueError(f"'{text}' already carries a version specifier")
            specifier = f"=={version}"
        pinned = specifier[2:].strip() if specifier.startswith("==") else None
        raw = f"{name}{match.group(2) or ''}{specifier}"
        return cls(raw=raw, name=canonical_name(name), pinned=pinned)


def canonical_name(name: str) -> str:
    return re.sub(r"[-_.]+", "-", name).lower()


class PipOperation(Operation):
    """Manage Python packages with pip, optionally inside a virtualenv."""

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        names = spec.get("name")
        if isinstance(names, str):
            names = [n.strip() for n in names.split(",") if n.strip()]
        self.requirements_file = str(spec["requirements"]) if spec.get("requirements") else None
        if not names and not self.requirements_file:
            raise ValueError("pip operation requires name or requirements")
        if names and self.requirements_file:
            raise ValueError("pip operation accepts name or requirements, not both")
        version = spec.get("version")
        if version is not None and len(names or []) != 1:
            raise ValueError("pip version can only be given with a single package name")
        self.packages = [Requirement.parse(str(n), None if version is None else str(version)) for n in names or []]
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent", "latest"}:
            raise ValueError("pip operation state must be 'present', 'absent', or 'latest'")
        self.virtualenv = str(spec["virtualenv"]) if spec.get("virtualenv") else None
        self.virtualenv_command = str(spec.get("virtualenv_command") or "virtualenv")
        self.executable = str(spec["executable"]) if spec.get("executable") else None
        if self.virtualenv and self.executable:
            raise ValueError("pip operation accepts virtualenv or executable, not both")
        self.extra_args = shlex.split(str(spec.get("extra_args") or ""))
        self.chdir = str(spec["chdir"]) if spec.get("chdir") else None

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        reasons: list[str] = []
        venv_created = self._ensure_virtualenv(executor, reasons)
        pip = self._pip_command()
        if self.requirements_file:
            changed = self._apply_requirements(executor, pip, reasons)
        elif self.state == "absent":
            changed = self._ensure_absent(executor, pip, reasons, venv_created)
        elif self.state == "latest":
            changed = self._ensure_latest(executor, pip, reasons)
        else:
            changed = self._ensure_present(executor, pip, reasons, venv_created)
        changed = changed or venv_created
        detail = ", ".join(reasons) if reasons else "already-installed"
        return ActionResult(
            host=host.name,
            action="pip",
            changed=changed,
            details=detail,
            resource=",".join(p.raw for p in self.packages) or self.requirements_file,
            data={"state": self.state, "virtualenv": self.virtualenv},
        )

    def _ensure_virtualenv(self, executor: Executor, reasons: list[str]) -> bool:
        if not self.virtualenv:
            return False
        probe = executor.run(["test", "-x", f"{self.virtualenv}/bin/pip"], check=False, mutable=False)
        if probe.returncode == 0:
            return False
        command = shlex.split(self.virtualenv_command) + [self.virtualenv]
        self._run(executor, command, "virtualenv creation")
        reasons.append(f"virtualenv={self.virtualenv}")
        return True

    def _pip_command(self) -> list[str]:
        if self.virtualenv:
            return [f"{self.virtualenv}/bin/pip"]
        if self.executable:
            return shlex.split(self.executable)
        return ["pip"]

    def _installed(self, executor: Executor, pip: list[str], venv_created: bool) -> dict[str, str]:
        if venv_created and executor.dry_run:
            return {}
        result = self._run(executor, pip + ["freeze", "--all"], "pip freeze", mutable=False)
        installed: dict[str, str] = {}
        for line in result.stdout.splitlines():
            name, sep, version = line.strip().partition("==")
            if sep:
                installed[canonical_name(name)] = version.strip()
        return installed

    def _ensure_present(self, executor: Executor, pip: list[str], reasons: list[str], venv_created: bool) -> bool:
        installed = self._installed(executor, pip, venv_created)
        needed = [
            pkg
            for pkg in self.packages
            if pkg.name not in installed or (pkg.pinned is not None and installed[pkg.name] != pkg.pinned)
        ]
        if not needed:
            return False
        self._run(executor, pip + ["install"] + self.extra_args + [p.raw for p in needed], "pip install")
        reasons.append(f"installed={','.join(p.raw for p in needed)}")
        return True

    def _ensure_absent(self, executor: Executor, pip: list[str], reasons: list[str], venv_created: bool) -> bool:
        installed = self._installed(executor, pip, venv_created)
        removable = [pkg for pkg in self.packages if pkg.name in installed]
        if not removable:
            return False
        self._run(executor, pip + ["uninstall", "-y"] + self.extra_args + [p.name for p in removable], "pip uninstall")
        reasons.append(f"removed={','.join(p.name for p in removable)}")
        return True

    def _ensure_latest(self, executor: Executor, pip: list[str], reasons: list[str]) -> bool:
        command = pip + ["install", "--upgrade"] + self.extra_args + [p.raw for p in self.packages]
        result = self._run(executor, command, "pip install --upgrade")
        if executor.dry_run:
            reasons.append("upgrade (check mode)")
            return True
        if "Successfully installed" not in result.stdout:
            return False
        reasons.append(_installed_summary(result.stdout))
        return True

    def _apply_requirements(self, executor: Executor, pip: list[str], reasons: list[str]) -> bool:
        assert self.requirements_file is not None
        if self.state == "absent":
            command = pip + ["uninstall", "-y"] + self.extra_args + ["-r", self.requirements_file]
            marker = "Successfully uninstalled"
        else:
            upgrade = ["--upgrade"] if self.state == "latest" else []
            command = pip + ["install"] + upgrade + self.extra_args + ["-r", self.requirements_file]
            marker = "Successfully installed"
        result = self._run(executor, command, "pip requirements")
        if executor.dry_run:
            reasons.append(f"requirements={self.requirements_file} (check mode)")
            return True
        if marker not in result.stdout:
            return False
        reasons.append(_installed_summary(result.stdout))
        return True

    def _run(self, executor: Executor, command: list[str], what: str, *, mutable: bool = True) -> CommandResult:
        result = executor.run(command, check=False, mutable=mutable, cwd=self.chdir)
        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip().splitlines()
            reason = output[-1] if output else f"rc={result.returncode}"
            logger.debug("pip command failed rc=%s cmd=%s", result.returncode, " ".join(command))
            raise OperationError(f"{what} failed: {reason}")
        return result


def _installed_summary(stdout: str) -> str:
    for line in stdout.splitlines():
        if line.startswith("Successfully"):
            return line.strip()
    return "changed"
