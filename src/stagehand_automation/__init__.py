"""Stagehand playbook automation toolkit."""

from .runner import PlaybookRunner
from .inventory import InventoryLoader
from .playbook import PlaybookLoader

__all__ = ["PlaybookRunner", "InventoryLoader", "PlaybookLoader"]
