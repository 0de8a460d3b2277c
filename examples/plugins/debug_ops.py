"""
Example plugin module for Stagehand.

Drop this file into a plugin directory (see plugin_dirs in main.conf) or make it
importable (plugin_modules) and it will register a `debug` operation that
reports a message, or the value of a variable, without touching the host.
"""

from stagehand_automation.operations.base import Operation
from stagehand_automation.types import ActionResult, HostConfig


class DebugOperation(Operation):
    def __init__(self, spec: dict):
        super().__init__(spec)
        self.message = spec.get("msg", "Hello world!")

    def apply(self, host: HostConfig, executor) -> ActionResult:
        # arguments arrive already templated, so msg may carry host variables
        return ActionResult(
            host=host.name,
            action="debug",
            changed=False,
            details=str(self.message),
            data={"msg": self.message},
        )


def register_operations(registry) -> None:
    registry["debug"] = DebugOperation
