from .base import Operation
from .command import CommandOperation, ShellOperation
from .file import FileOperation
from .pip import PipOperation
from .ping import PingOperation

OPERATION_REGISTRY = {
    "file": FileOperation,
    "pip": PipOperation,
    "command": CommandOperation,
    "shell": ShellOperation,
    "ping": PingOperation,
}

__all__ = [
    "Operation",
    "FileOperation",
    "PipOperation",
    "CommandOperation",
    "ShellOperation",
    "PingOperation",
    "OPERATION_REGISTRY",
]
