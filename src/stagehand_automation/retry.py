from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def retry_path(playbook: Path, save_dir: Optional[Path] = None) -> Path:
    directory = save_dir if save_dir is not None else playbook.parent
    return directory / f"{playbook.stem}.retry"


def write_retry_file(playbook: Path, hosts: Iterable[str], save_dir: Optional[Path] = None) -> Optional[Path]:
    """Write the failed/unreachable hosts so a rerun can use ``--limit @file``.

    Returns the written path, or ``None`` when there is nothing to retry or
    the file cannot be written.
    """

    names = sorted(set(hosts))
    if not names:
        return None
    path = retry_path(playbook, save_dir)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("".join(f"{name}\n" for name in names))
    except OSError as exc:
        logger.warning("Could not create retry file %s: %s", path, exc.strerror)
        return None
    return path
