from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


@dataclass
class HostConfig:
    name: str
    connection: str = "ssh"
    address: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    variables: dict[str, Any] = field(default_factory=dict)
    groups: list[str] = field(default_factory=list)


@dataclass
class TaskSpec:
    name: str
    action: str
    args: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    when: Any = None
    ignore_errors: bool = False


@dataclass
class PlaySpec:
    name: str
    hosts: str
    tasks: list[TaskSpec] = field(default_factory=list)
    vars: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)


@dataclass
class Playbook:
    path: Path
    plays: list[PlaySpec]


@dataclass
class ActionResult:
    host: str
    action: str
    changed: bool
    details: str
    failed: bool = False
    resource: Optional[str] = None
    unreachable: bool = False
    skipped: bool = False
    data: dict[str, Any] = field(default_factory=dict)
