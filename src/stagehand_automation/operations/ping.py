from __future__ import annotations

from .base import Operation
from ..executors import Executor
from ..types import ActionResult, HostConfig


class PingOperation(Operation):
    """Check that the host answers; never changes anything."""

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        executor.ping()
        return ActionResult(host=host.name, action="ping", changed=False, details="pong", data={"ping": "pong"})
