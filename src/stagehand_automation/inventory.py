from __future__ import annotations

import fnmatch
import logging
import re
import shlex
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from .errors import InventoryError
from .types import HostConfig

logger = logging.getLogger(__name__)

LOCAL_NAMES = {"localhost", "127.0.0.1", "::1"}

# Inventory keys that configure the connection rather than becoming host variables.
CONNECTION_KEYS = {
    "connection": "connection",
    "ansible_connection": "connection",
    "address": "address",
    "ansible_host": "address",
    "ansible_ssh_host": "address",
    "port": "port",
    "ansible_port": "port",
    "ansible_ssh_port": "port",
    "user": "user",
    "ansible_user": "user",
    "ansible_ssh_user": "user",
}


class Inventory:
    """Managed hosts plus their group memberships."""

    def __init__(self, hosts: dict[str, HostConfig], groups: dict[str, list[str]]):
        self.hosts = hosts
        self.groups = groups
        self.groups["all"] = list(hosts)
        grouped = {name for group, members in groups.items() if group != "all" for name in members}
        self.groups.setdefault("ungrouped", [name for name in hosts if name not in grouped])

    def select(self, pattern: str, subset: Optional[str] = None) -> list[HostConfig]:
        """Return the hosts matching ``pattern`` narrowed by ``subset``, in inventory order."""
        names = self._resolve(pattern)
        if subset:
            names &= self._resolve_subset(subset)
        return [host for name, host in self.hosts.items() if name in names]

    def _resolve(self, pattern: str) -> set[str]:
        terms = [t.strip() for t in re.split(r"[:,]", pattern or "") if t.strip()]
        selected: set[str] = set()
        intersections: list[set[str]] = []
        exclusions: set[str] = set()
        for term in terms:
            if term.startswith("!"):
                exclusions |= self._match_term(term[1:])
            elif term.startswith("&"):
                intersections.append(self._match_term(term[1:]))
            else:
                selected |= self._match_term(term)
        for other in intersections:
            selected &= other
        return selected - exclusions

    def _resolve_subset(self, subset: str) -> set[str]:
        if subset.startswith("@"):
            path = Path(subset[1:]).expanduser()
            try:
                lines = path.read_text().splitlines()
            except OSError as exc:
                raise InventoryError(f"unable to read limit file {path}: {exc.strerror}") from None
            return {line.strip() for line in lines if line.strip()} & set(self.hosts)
        return self._resolve(subset)

    def _match_term(self, term: str) -> set[str]:
        if term in ("all", "*"):
            return set(self.hosts)
        if term in self.groups:
            return set(self.groups[term])
        if term in self.hosts:
            return {term}
        if any(ch in term for ch in "*?["):
            matched = {name for name in self.hosts if fnmatch.fnmatchcase(name, term)}
            for group, members in self.groups.items():
                if fnmatch.fnmatchcase(group, term):
                    matched.update(members)
            return matched
        logger.debug("pattern term %s matched no hosts", term)
        return set()


class InventoryLoader:
    """Loads inventories from inline host lists, INI files or YAML files."""

    SECTION_RE = re.compile(r"^\[([^\]:]+)(?::(vars|children))?\]$")

    def load(self, source: str) -> Inventory:
        source = str(source)
        if "," in source and not Path(source).exists():
            raw_hosts = {name.strip(): {} for name in source.split(",") if name.strip()}
            inventory = self._build(raw_hosts, {}, {}, {})
        else:
            path = Path(source).expanduser()
            if not path.exists():
                raise InventoryError(f"inventory {path} does not exist")
            if path.suffix.lower() in {".yml", ".yaml"}:
                inventory = self._load_yaml(path)
            else:
                inventory = self._load_ini(path)
        if not inventory.hosts:
            raise InventoryError(f"inventory {source} does not define any hosts")
        logger.debug("inventory=%s hosts=%s", source, ",".join(inventory.hosts))
        return inventory

    def _load_ini(self, path: Path) -> Inventory:
        raw_hosts: dict[str, dict[str, Any]] = {}
        members: dict[str, list[str]] = {}
        children: dict[str, list[str]] = {}
        group_vars: dict[str, dict[str, Any]] = {}
        group, kind = "ungrouped", None

        for lineno, line in enumerate(path.read_text().splitlines(), start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith(("#", ";")):
                continue
            section = self.SECTION_RE.match(stripped)
            if section:
                group, kind = section.group(1).strip(), section.group(2)
                if kind is None:
                    members.setdefault(group, [])
                continue
            try:
                tokens = shlex.split(stripped, comments=True)
            except ValueError as exc:
                raise InventoryError(f"{path}:{lineno} {exc}") from None
            if kind == "vars":
                key, sep, value = stripped.partition("=")
                if not sep:
                    raise InventoryError(f"{path}:{lineno} expected key=value in [{group}:vars]")
                group_vars.setdefault(group, {})[key.strip()] = _coerce(value.strip())
            elif kind == "children":
                children.setdefault(group, []).append(tokens[0])
            else:
                name, host_vars = tokens[0], _parse_pairs(tokens[1:], f"{path}:{lineno}")
                raw_hosts.setdefault(name, {}).update(host_vars)
                if group != "ungrouped":
                    members.setdefault(group, []).append(name)
        return self._build(raw_hosts, members, children, group_vars)

    def _load_yaml(self, path: Path) -> Inventory:
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise InventoryError(f"{path}: {exc}") from None
        if not isinstance(data, dict):
            raise InventoryError(f"{path}: inventory must be a mapping of groups")
        raw_hosts: dict[str, dict[str, Any]] = {}
        members: dict[str, list[str]] = {}
        children: dict[str, list[str]] = {}
        group_vars: dict[str, dict[str, Any]] = {}

        def _walk(name: str, body: Any) -> None:
            body = body or {}
            if not isinstance(body, dict):
                raise InventoryError(f"{path}: group '{name}' must be a mapping")
            hosts = body.get("hosts") or {}
            if not isinstance(hosts, dict):
                raise InventoryError(f"{path}: hosts of group '{name}' must be a mapping of host names")
            for host, host_vars in hosts.items():
                host_vars = host_vars or {}
                if not isinstance(host_vars, dict):
                    raise InventoryError(f"{path}: variables of host '{host}' must be a mapping")
                raw_hosts.setdefault(str(host), {}).update(host_vars)
                members.setdefault(name, []).append(str(host))
            group_body_vars = body.get("vars") or {}
            if not isinstance(group_body_vars, dict):
                raise InventoryError(f"{path}: vars of group '{name}' must be a mapping")
            if group_body_vars:
                group_vars.setdefault(name, {}).update(group_body_vars)
            child_groups = body.get("children") or {}
            if not isinstance(child_groups, dict):
                raise InventoryError(f"{path}: children of group '{name}' must be a mapping")
            for child, child_body in child_groups.items():
                children.setdefault(name, []).append(str(child))
                _walk(str(child), child_body)

        for group_name, group_body in data.items():
            _walk(str(group_name), group_body)
        return self._build(raw_hosts, members, children, group_vars)

    def _build(
        self,
        raw_hosts: dict[str, dict[str, Any]],
        members: dict[str, list[str]],
        children: dict[str, list[str]],
        group_vars: dict[str, dict[str, Any]],
    ) -> Inventory:
        groups = {name: list(hosts) for name, hosts in members.items()}
        for parent in children:
            groups[parent] = _expand_group(parent, members, children, set())
        groups.pop("all", None)

        depths = {group: _group_depth(group, children) for group in groups}
        hosts: dict[str, HostConfig] = {}
        for name, own_vars in raw_hosts.items():
            host_groups = [group for group, names in groups.items() if name in names]
            merged: dict[str, Any] = dict(group_vars.get("all", {}))
            # Parents first so a child group's vars override its ancestors'.
            for group in sorted(host_groups, key=lambda g: depths[g]):
                merged.update(group_vars.get(group, {}))
            merged.update(own_vars)
            hosts[name] = _make_host(name, merged, host_groups)
        return Inventory(hosts, groups)


def _expand_group(
    name: str,
    members: dict[str, list[str]],
    children: dict[str, list[str]],
    seen: set[str],
) -> list[str]:
    if name in seen:
        raise InventoryError(f"group '{name}' is its own descendant")
    seen = seen | {name}
    result = list(members.get(name, []))
    for child in children.get(name, []):
        for host in _expand_group(child, members, children, seen):
            if host not in result:
                result.append(host)
    return result


def _group_depth(name: str, children: dict[str, list[str]], seen: frozenset = frozenset()) -> int:
    """Number of ancestor levels above ``name``; top-level groups are 0."""
    parents = [parent for parent, kids in children.items() if name in kids and parent not in seen]
    if not parents:
        return 0
    return 1 + max(_group_depth(parent, children, seen | {name}) for parent in parents)


def _make_host(name: str, values: dict[str, Any], groups: list[str]) -> HostConfig:
    settings: dict[str, Any] = {}
    variables: dict[str, Any] = {}
    for key, value in values.items():
        target = CONNECTION_KEYS.get(key)
        if target:
            settings[target] = value
        else:
            variables[key] = value
    connection = settings.get("connection") or ("local" if name in LOCAL_NAMES else "ssh")
    port = settings.get("port")
    try:
        port = int(port) if port is not None else None
    except (TypeError, ValueError):
        raise InventoryError(f"host '{name}' has an invalid port {port!r}") from None
    return HostConfig(
        name=name,
        connection=str(connection),
        address=str(settings["address"]) if settings.get("address") else None,
        port=port,
        user=str(settings["user"]) if settings.get("user") else None,
        variables=variables,
        groups=list(groups),
    )


def _parse_pairs(tokens: Iterable[str], where: str) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        if not sep:
            raise InventoryError(f"{where} expected key=value, got '{token}'")
        values[key] = _coerce(value)
    return values


def _coerce(value: str) -> Any:
    try:
        return yaml.safe_load(value) if value else ""
    except yaml.YAMLError:
        return value
