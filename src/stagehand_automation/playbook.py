from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .errors import PlaybookError, VarsError
from .types import PlaySpec, Playbook, TaskSpec
from .variables import parse_kv

logger = logging.getLogger(__name__)

FREE_FORM_ACTIONS = {"command", "shell"}
TASK_KEYWORDS = {"name", "tags", "when", "ignore_errors", "action"}
PLAY_KEYWORDS = {"name", "hosts", "vars", "vars_files", "tags", "tasks", "gather_facts"}
INCLUDE_KEYS = ("include", "import_playbook")


class PlaybookLoader:
    """Loads YAML playbooks into :class:`Playbook` objects."""

    def load(self, path: Path) -> Playbook:
        path = Path(path)
        plays = self._load_plays(path, set())
        logger.debug("playbook=%s plays=%d", path, len(plays))
        return Playbook(path=path, plays=plays)

    def _load_plays(self, path: Path, seen: set[Path]) -> list[PlaySpec]:
        real = path.resolve()
        if real in seen:
            raise PlaybookError(f"Recursive include detected for {path}")
        seen = seen | {real}
        data = self._read_yaml(path)
        if data is None:
            return []
        if not isinstance(data, list):
            raise PlaybookError(f"{path}: a playbook must be a list of plays")

        plays: list[PlaySpec] = []
        for index, entry in enumerate(data, start=1):
            if not isinstance(entry, dict):
                raise PlaybookError(f"{path}: play {index} must be a mapping")
            include = next((entry[key] for key in INCLUDE_KEYS if key in entry), None)
            if include is not None:
                plays.extend(self._load_plays(path.parent / str(include), seen))
                continue
            plays.append(self._parse_play(entry, index, path))
        return plays

    @staticmethod
    def _read_yaml(path: Path) -> Any:
        try:
            text = path.read_text()
        except OSError as exc:
            raise PlaybookError(f"unable to read playbook {path}: {exc.strerror}") from None
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise PlaybookError(f"{path}: {exc}") from None

    def _parse_play(self, entry: dict[str, Any], index: int, path: Path) -> PlaySpec:
        where = f"{path}: play {index}"
        hosts = entry.get("hosts")
        if not hosts:
            raise PlaybookError(f"{where} is missing 'hosts'")
        if isinstance(hosts, list):
            hosts = ",".join(str(h) for h in hosts)
        unknown = set(entry) - PLAY_KEYWORDS
        if unknown:
            raise PlaybookError(f"{where} has unsupported keys: {', '.join(sorted(unknown))}")

        play_vars = entry.get("vars") or {}
        if not isinstance(play_vars, dict):
            raise PlaybookError(f"{where} vars must be a mapping")
        play_vars = dict(play_vars)
        for vars_file in entry.get("vars_files") or []:
            loaded = self._read_yaml(path.parent / str(vars_file)) or {}
            if not isinstance(loaded, dict):
                raise PlaybookError(f"{where} vars file {vars_file} must hold a mapping")
            play_vars.update(loaded)

        name = str(entry.get("name") or hosts)
        raw_tasks = entry.get("tasks") or []
        if not isinstance(raw_tasks, list):
            raise PlaybookError(f"{where} tasks must be a list")
        tasks = [self._parse_task(task, f"{where} task {pos}") for pos, task in enumerate(raw_tasks, start=1)]
        return PlaySpec(
            name=name,
            hosts=str(hosts),
            tasks=tasks,
            vars=play_vars,
            tags=_normalize_tags(entry.get("tags"), where),
        )

    @staticmethod
    def _parse_task(raw: Any, where: str) -> TaskSpec:
        if not isinstance(raw, dict):
            raise PlaybookError(f"{where} must be a mapping")
        candidates = [key for key in raw if key not in TASK_KEYWORDS]
        if "action" in raw:
            if candidates:
                raise PlaybookError(f"{where} mixes 'action' with '{candidates[0]}'")
            action_text = str(raw["action"]).strip()
            action, _, rest = action_text.partition(" ")
            args_value: Any = rest.strip()
        else:
            if len(candidates) != 1:
                detail = ", ".join(candidates) if candidates else "none"
                raise PlaybookError(f"{where} must name exactly one operation (found: {detail})")
            action = candidates[0]
            args_value = raw[action]

        try:
            args = _parse_args(action, args_value)
        except VarsError as exc:
            raise PlaybookError(f"{where}: {exc}") from None
        name = str(raw.get("name") or f"{action} {_summary(args)}".strip())
        when = raw.get("when")
        return TaskSpec(
            name=name,
            action=action,
            args=args,
            tags=_normalize_tags(raw.get("tags"), where),
            when=when,
            ignore_errors=_as_bool(raw.get("ignore_errors", False)),
        )


def _parse_args(action: str, value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if not isinstance(value, str):
        raise PlaybookError(f"arguments for '{action}' must be a mapping or key=value string")
    if action in FREE_FORM_ACTIONS:
        return _parse_free_form(value)
    return parse_kv(value)


def _parse_free_form(text: str) -> dict[str, Any]:
    # Trailing key=value pairs for known options are split off the command.
    options: dict[str, Any] = {}
    command = text.strip()
    while command:
        head, _, last = command.rpartition(" ")
        key, sep, val = last.partition("=")
        if not sep or key not in {"chdir", "creates", "removes"}:
            break
        options[key] = val
        command = head.rstrip()
    options["cmd"] = command
    return options


def _normalize_tags(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        raise PlaybookError(f"{where} tags must be a string or list")
    tags: list[str] = []
    for item in items:
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def _summary(args: dict[str, Any]) -> str:
    for key in ("cmd", "name", "path", "dest"):
        if args.get(key):
            return str(args[key])
    return ""


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)
