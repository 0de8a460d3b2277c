from __future__ import annotations

import errno
import grp
import os
import pwd
import shutil
import stat
from pathlib import Path
from typing import Any, Optional

from .base import Operation
from ..errors import ConversionRefused, OperationError
from ..executors import Executor
from ..types import ActionResult, HostConfig

STATES = ("file", "directory", "link", "hard", "touch", "absent")
SELINUX_FIELDS = ("seuser", "serole", "setype", "selevel")
SELINUX_XATTR = "security.selinux"


def discover_state(path: Path) -> str:
    """Return the on-disk state of ``path`` without following a final symlink."""

    if not os.path.lexists(path):
        return "absent"
    if os.path.islink(path):
        return "link"
    if os.path.isdir(path):
        return "directory"
    if os.stat(path).st_nlink > 1:
        return "hard"
    return "file"


class FileOperation(Operation):
    """Converge a path to a declared state and its ownership, mode and SELinux context.

    The target state is one of ``file``, ``directory``, ``link``, ``hard``,
    ``touch`` or ``absent``. When ``state`` is omitted the discovered state is
    kept (or ``file`` for a missing path), so only attributes converge.
    Regular files are never created here: content belongs to a copy or
    template operation.
    """

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_path = spec.get("path") or spec.get("dest") or spec.get("name")
        if not raw_path:
            raise ValueError("file operation requires a path")
        self.path = Path(os.path.expanduser(str(raw_path)))
        raw_state = spec.get("state")
        self.state = str(raw_state) if raw_state is not None else None
        if self.state is not None and self.state not in STATES:
            raise ValueError(f"file operation state must be one of: {', '.join(STATES)}")
        self.src = str(spec["src"]) if spec.get("src") is not None else None
        self.force = _as_bool(spec.get("force", False))
        self.recurse = _as_bool(spec.get("recurse", False))
        self.mode = self._parse_mode(spec.get("mode"))
        self.owner_uid = self._parse_uid(spec.get("owner"))
        self.group_gid = self._parse_gid(spec.get("group"))
        self.selinux = {key: str(spec[key]) for key in SELINUX_FIELDS if spec.get(key)}
        self.show_diff = _as_bool(spec.get("_diff", False))
        if self.recurse and self.state != "directory":
            raise ValueError("recurse option requires state to be 'directory'")
        if self.state in ("link", "hard") and not self.src:
            raise ValueError("src and dest are required for creating links")

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        if not executor.is_local:
            raise OperationError(f"file operation needs a local connection, '{host.name}' uses {host.connection}")
        prev_state = discover_state(self.path)
        state = self.state or (prev_state if prev_state != "absent" else "file")
        converge = getattr(self, f"_converge_{state}")
        changed, reasons, data = converge(prev_state, executor.dry_run)
        data = {"path": str(self.path), "state": state, **data}
        if self.show_diff:
            data["diff"] = {
                "before": {"path": str(self.path), "state": prev_state},
                "after": {"path": str(self.path), "state": state},
            }
        detail = ", ".join(reasons) if reasons else "noop"
        return ActionResult(
            host=host.name,
            action="file",
            changed=changed,
            details=detail,
            resource=str(self.path),
            data=data,
        )

    # State transitions ----------------------------------------------------
    def _converge_absent(self, prev_state: str, dry_run: bool):
        if prev_state == "absent":
            return False, [], {}
        if not dry_run:
            if prev_state == "directory":
                try:
                    shutil.rmtree(self.path)
                except OSError as exc:
                    raise OperationError(f"rmtree failed: {exc.strerror}", path=self.path) from exc
            else:
                try:
                    os.unlink(self.path)
                except OSError as exc:
                    raise OperationError(f"unlinking failed: {exc.strerror}", path=self.path) from exc
        return True, [f"removed {prev_state}"], {}

    def _converge_file(self, prev_state: str, dry_run: bool):
        if prev_state == "absent":
            raise OperationError("file does not exist, use a copy or template operation to create it", path=self.path)
        if prev_state not in ("file", "hard"):
            raise ConversionRefused(f"refusing to convert between {prev_state} and file", path=self.path)
        reasons: list[str] = []
        changed = self._converge_attributes(self.path, dry_run, reasons)
        return changed, reasons, {}

    def _converge_directory(self, prev_state: str, dry_run: bool):
        reasons: list[str] = []
        changed = False
        if prev_state == "absent":
            changed = True
            reasons.append("created")
            if dry_run:
                return changed, reasons, {}
            for directory in self._missing_parents():
                try:
                    os.mkdir(directory)
                except OSError as exc:
                    raise OperationError(f"error creating directory: {exc.strerror}", path=directory) from exc
                self._converge_attributes(directory, dry_run, [])
        elif prev_state != "directory":
            raise ConversionRefused(f"refusing to convert between {prev_state} and directory", path=self.path)

        changed = self._converge_attributes(self.path, dry_run, reasons) or changed
        if self.recurse and self._converge_tree(dry_run):
            changed = True
            reasons.append("recursed")
        return changed, reasons, {}

    def _converge_link(self, prev_state: str, dry_run: bool):
        return self._converge_any_link("link", prev_state, dry_run)

    def _converge_hard(self, prev_state: str, dry_run: bool):
        return self._converge_any_link("hard", prev_state, dry_run)

    def _converge_any_link(self, state: str, prev_state: str, dry_run: bool):
        assert self.src is not None
        src = self.src
        if state == "hard":
            if not os.path.isabs(src):
                raise OperationError("absolute paths are required for hard links", path=self.path)
            absolute_src = src
        else:
            base = self.path if prev_state == "directory" else self.path.parent
            absolute_src = os.path.join(base, src)
        if not os.path.exists(absolute_src) and not self.force:
            raise OperationError(
                f"src file does not exist, use force=yes to create the link anyway: {absolute_src}",
                path=self.path,
            )

        if prev_state == "absent":
            changed = True
        elif prev_state == "link" and state == "link":
            changed = os.readlink(self.path) != src
        elif prev_state == "hard" and state == "hard" and _same_inode(self.path, src):
            changed = False
        else:
            changed = True
            if not self.force:
                raise ConversionRefused(f"refusing to convert between {prev_state} and {state}", path=self.path)
            if prev_state == "directory" and os.listdir(self.path):
                raise ConversionRefused("the directory is not empty, refusing to convert it", path=self.path)

        reasons: list[str] = []
        if changed:
            reasons.append(f"{state}->{src}")
            if not dry_run:
                self._replace_with_link(state, src, prev_state)
        data = {"src": src, "dest": str(self.path)}
        if dry_run and not os.path.lexists(self.path):
            return changed, reasons, data
        changed = self._converge_attributes(self.path, dry_run, reasons) or changed
        return changed, reasons, data

    def _converge_touch(self, prev_state: str, dry_run: bool):
        if prev_state == "link":
            raise OperationError("cannot touch other than files and directories", path=self.path)
        if dry_run:
            return True, ["touched"], {}
        if prev_state == "absent":
            try:
                open(self.path, "w").close()
            except OSError as exc:
                raise OperationError(f"could not touch target: {exc.strerror}", path=self.path) from exc
        else:
            try:
                os.utime(self.path, None)
            except OSError as exc:
                raise OperationError(f"error while touching existing target: {exc.strerror}", path=self.path) from exc
        reasons = ["created" if prev_state == "absent" else "touched"]
        try:
            self._converge_attributes(self.path, dry_run, reasons)
        except OperationError:
            if prev_state == "absent":
                os.remove(self.path)
            raise
        return True, reasons, {}

    # Helpers ---------------------------------------------------------------
    def _missing_parents(self) -> list[Path]:
        missing: list[Path] = []
        current = self.path
        while not os.path.lexists(current):
            missing.append(current)
            if current.parent == current:
                break
            current = current.parent
        return list(reversed(missing))

    def _replace_with_link(self, state: str, src: str, prev_state: str) -> None:
        try:
            if prev_state == "directory":
                os.rmdir(self.path)
            elif prev_state != "absent":
                os.unlink(self.path)
            if state == "hard":
                os.link(src, self.path)
            else:
                os.symlink(src, self.path)
        except OSError as exc:
            raise OperationError(f"error while linking: {exc.strerror}", path=self.path) from exc

    def _converge_tree(self, dry_run: bool) -> bool:
        changed = False
        for root, dirs, files in os.walk(self.path):
            for name in dirs + files:
                if self._converge_attributes(Path(root) / name, dry_run, []):
                    changed = True
        return changed

    def _converge_attributes(self, path: Path, dry_run: bool, reasons: list[str]) -> bool:
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return False
        is_link = stat.S_ISLNK(st.st_mode)
        changed = False
        try:
            if self.mode is not None and not is_link and stat.S_IMODE(st.st_mode) != self.mode:
                changed = True
                reasons.append(f"mode->{self.mode:04o}")
                if not dry_run:
                    os.chmod(path, self.mode)

            uid = self.owner_uid if self.owner_uid is not None and self.owner_uid != st.st_uid else -1
            gid = self.group_gid if self.group_gid is not None and self.group_gid != st.st_gid else -1
            if uid != -1:
                reasons.append(f"owner->{uid}")
            if gid != -1:
                reasons.append(f"group->{gid}")
            if uid != -1 or gid != -1:
                changed = True
                if not dry_run:
                    os.lchown(path, uid, gid)

            if self.selinux:
                current = _read_selinux_context(path)
                if current is not None:
                    wanted = _merge_context(current, self.selinux)
                    if wanted != current:
                        changed = True
                        reasons.append(f"context->{wanted}")
                        if not dry_run:
                            os.setxattr(path, SELINUX_XATTR, wanted.encode() + b"\0", follow_symlinks=False)
        except OSError as exc:
            raise OperationError(f"unable to set attributes: {exc.strerror}", path=path) from exc
        return changed

    @staticmethod
    def _parse_mode(value: Optional[object]) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, int):
            return value
        text = str(value).strip()
        if not text:
            return None
        try:
            return int(text, 8)
        except ValueError:
            raise ValueError(f"mode must be an octal number, got '{text}'") from None

    @staticmethod
    def _parse_uid(value: Optional[object]) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, int):
            return value
        text = str(value).strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            try:
                return pwd.getpwnam(text).pw_uid
            except KeyError:
                raise ValueError(f"unknown user '{text}'")

    @staticmethod
    def _parse_gid(value: Optional[object]) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, int):
            return value
        text = str(value).strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            try:
                return grp.getgrnam(text).gr_gid
            except KeyError:
                raise ValueError(f"unknown group '{text}'")


def _same_inode(path: Path, src: str) -> bool:
    try:
        return os.stat(path).st_ino == os.stat(src).st_ino
    except OSError:
        return False


def _read_selinux_context(path: Path) -> Optional[str]:
    if not hasattr(os, "getxattr"):
        return None
    try:
        raw = os.getxattr(path, SELINUX_XATTR, follow_symlinks=False)
    except OSError as exc:
        # No label support on this filesystem or kernel.
        if exc.errno in (errno.ENODATA, errno.ENOTSUP, errno.EOPNOTSUPP):
            return None
        raise
    return raw.rstrip(b"\0").decode()


def _merge_context(current: str, wanted: dict[str, str]) -> str:
    parts = current.split(":", 3)
    while len(parts) < 4:
        parts.append("")
    for index, key in enumerate(SELINUX_FIELDS):
        if key in wanted:
            parts[index] = wanted[key]
    return ":".join(part for part in parts if part)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)
