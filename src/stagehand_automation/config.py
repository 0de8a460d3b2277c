from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ConfigError


DEFAULT_CONFIG = Path("/etc/stagehand/main.conf")
DEFAULT_INVENTORY = "/etc/stagehand/hosts"


@dataclass
class StagehandConfig:
    inventory: str = DEFAULT_INVENTORY
    forks: int = 5
    timeout: int = 10
    remote_user: Optional[str] = None
    private_key_file: Optional[Path] = None
    retry_files_enabled: bool = True
    retry_files_save_path: Optional[Path] = None
    plugin_dirs: list[Path] = field(default_factory=list)
    plugin_modules: list[str] = field(default_factory=list)


def load_config(path: Path) -> StagehandConfig:
    if not path.exists():
        return StagehandConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: {exc}") from None
    defaults = data.get("defaults", {})
    private_key = defaults.get("private_key_file")
    retry_path = defaults.get("retry_files_save_path")
    return StagehandConfig(
        inventory=str(defaults.get("inventory", DEFAULT_INVENTORY)),
        forks=_positive_int(defaults.get("forks", 5), "forks"),
        timeout=_positive_int(defaults.get("timeout", 10), "timeout"),
        remote_user=str(defaults["remote_user"]) if defaults.get("remote_user") else None,
        private_key_file=Path(private_key).expanduser() if private_key else None,
        retry_files_enabled=bool(defaults.get("retry_files_enabled", True)),
        retry_files_save_path=Path(retry_path).expanduser() if retry_path else None,
        plugin_dirs=[Path(p) for p in defaults.get("plugin_dirs", [])],
        plugin_modules=[str(m) for m in defaults.get("plugin_modules", [])],
    )


def _positive_int(value: Any, key: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {value!r}") from None
    if number < 1:
        raise ConfigError(f"{key} must be at least 1")
    return number
