from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .errors import HostUnreachable
from .executors import Executor, LocalExecutor, SSHExecutor
from .inventory import Inventory
from .operations import OPERATION_REGISTRY, Operation
from .stats import AggregateStats
from .types import ActionResult, HostConfig, PlaySpec, Playbook, TaskSpec
from .variables import evaluate_when, host_context, template

logger = logging.getLogger(__name__)

STEP_YES, STEP_NO, STEP_CONTINUE = "y", "n", "c"


def tags_match(tags: Iterable[str], only_tags: Iterable[str], skip_tags: Iterable[str]) -> bool:
    """A task runs when it shares a tag with ``only_tags`` and none with ``skip_tags``."""
    tag_set = set(tags)
    return bool(tag_set & set(only_tags)) and not tag_set & set(skip_tags)


class PlaybookRunner:
    """Coordinates the execution of a playbook's plays across inventory hosts."""

    def __init__(
        self,
        playbook: Playbook,
        inventory: Inventory,
        *,
        only_tags: Optional[Iterable[str]] = None,
        skip_tags: Optional[Iterable[str]] = None,
        extra_vars: Optional[dict[str, Any]] = None,
        subset: Optional[str] = None,
        forks: int = 5,
        check: bool = False,
        diff: bool = False,
        start_at_task: Optional[str] = None,
        step: bool = False,
        prompt: Optional[Callable[[TaskSpec], str]] = None,
        connection: Optional[str] = None,
        timeout: int = 10,
        remote_user: Optional[str] = None,
        private_key_file: Optional[Path] = None,
        become: bool = False,
        become_user: str = "root",
        stats: Optional[AggregateStats] = None,
        play_callback: Optional[Callable[[PlaySpec, list[HostConfig]], None]] = None,
        task_callback: Optional[Callable[[TaskSpec], None]] = None,
        result_callback: Optional[Callable[[ActionResult], None]] = None,
    ):
        self.playbook = playbook
        self.inventory = inventory
        self.only_tags = list(only_tags or ["all"])
        self.skip_tags = list(skip_tags or [])
        self.extra_vars = dict(extra_vars or {})
        self.subset = subset
        self.forks = max(1, int(forks))
        self.check = check
        self.diff = diff
        self.start_at_task = start_at_task
        self.step = step
        self.prompt = prompt
        self.connection = connection
        self.timeout = timeout
        self.remote_user = remote_user
        self.private_key_file = private_key_file
        self.become = become
        self.become_user = become_user
        self.stats = stats or AggregateStats()
        self.play_callback = play_callback
        self.task_callback = task_callback
        self.result_callback = result_callback
        self._start_reached = start_at_task is None
        self._dead_hosts: set[str] = set()

    def run(self) -> AggregateStats:
        for play in self.playbook.plays:
            self._run_play(play)
        return self.stats

    @property
    def failed_hosts(self) -> list[str]:
        """Hosts that failed or were unreachable during this playbook."""
        return sorted(self._dead_hosts)

    # Listing ----------------------------------------------------------------
    def list_hosts(self) -> list[tuple[PlaySpec, list[HostConfig]]]:
        return [(play, self.inventory.select(play.hosts, self.subset)) for play in self.playbook.plays]

    def list_tasks(self) -> list[tuple[PlaySpec, list[TaskSpec]]]:
        listing = []
        for play in self.playbook.plays:
            tasks = [task for task in play.tasks if tags_match(self.task_tags(play, task), self.only_tags, self.skip_tags)]
            listing.append((play, tasks))
        return listing

    @staticmethod
    def task_tags(play: PlaySpec, task: TaskSpec) -> list[str]:
        tags = ["all"]
        for tag in play.tags + task.tags:
            if tag not in tags:
                tags.append(tag)
        return tags

    # Execution --------------------------------------------------------------
    def _run_play(self, play: PlaySpec) -> None:
        hosts = [h for h in self.inventory.select(play.hosts, self.subset) if h.name not in self._dead_hosts]
        if self.play_callback:
            self.play_callback(play, hosts)
        if not hosts:
            logger.warning("play=%s skipping: no hosts matched", play.name)
            return
        logger.debug("play=%s hosts=%s", play.name, ",".join(h.name for h in hosts))

        with ThreadPoolExecutor(max_workers=min(self.forks, len(hosts))) as pool:
            for task in play.tasks:
                if not self._should_run(play, task):
                    continue
                hosts = [h for h in hosts if h.name not in self._dead_hosts]
                if not hosts:
                    logger.warning("play=%s stopping: no hosts remaining", play.name)
                    return
                if self.task_callback:
                    self.task_callback(task)
                futures = [pool.submit(self._run_on_host, play, task, host) for host in hosts]
                for future in futures:
                    result = future.result()
                    if result.unreachable or (result.failed and not task.ignore_errors):
                        self._dead_hosts.add(result.host)
                    if self.result_callback:
                        self.result_callback(result)

    def _should_run(self, play: PlaySpec, task: TaskSpec) -> bool:
        if not self._start_reached:
            if task.name != self.start_at_task:
                return False
            self._start_reached = True
        if not tags_match(self.task_tags(play, task), self.only_tags, self.skip_tags):
            logger.debug("task=%s skipped by tags", task.name)
            return False
        if self.step:
            answer = self.prompt(task) if self.prompt else STEP_YES
            if answer == STEP_NO:
                return False
            if answer == STEP_CONTINUE:
                self.step = False
        return True

    def _run_on_host(self, play: PlaySpec, task: TaskSpec, host: HostConfig) -> ActionResult:
        resource = None
        try:
            context = host_context(host, play.vars, self.extra_vars)
            if task.when is not None and not evaluate_when(task.when, context):
                result = ActionResult(
                    host=host.name,
                    action=task.action,
                    changed=False,
                    details="skipped (condition false)",
                    skipped=True,
                )
            else:
                args = template(task.args, context)
                resource = self._resource_name(args)
                result = self._apply(task, host, args)
        except HostUnreachable as exc:
            logger.debug("task=%s host=%s unreachable: %s", task.name, host.name, exc)
            result = ActionResult(
                host=host.name,
                action=task.action,
                changed=False,
                details=str(exc),
                unreachable=True,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("task=%s host=%s failed: %s", task.name, host.name, exc, exc_info=logger.isEnabledFor(logging.DEBUG))
            result = ActionResult(
                host=host.name,
                action=task.action,
                changed=False,
                details=str(exc),
                failed=True,
            )
        if result.resource is None:
            result.resource = resource
        self.stats.compute(result, ignore_errors=task.ignore_errors)
        logger.debug("task=%s host=%s changed=%s failed=%s", task.name, host.name, result.changed, result.failed)
        return result

    def _apply(self, task: TaskSpec, host: HostConfig, args: dict[str, Any]) -> ActionResult:
        operation_cls = OPERATION_REGISTRY.get(task.action)
        if not operation_cls:
            detail = f"unknown operation '{task.action}'"
            logger.warning(detail)
            return ActionResult(host=host.name, action=task.action, changed=False, details=detail, failed=True)
        if self.diff:
            args = {**args, "_diff": True}
        operation: Operation = operation_cls(args)
        return operation.apply(host, self._executor_for(host))

    def _executor_for(self, host: HostConfig) -> Executor:
        connection = self.connection or host.connection
        options = dict(
            dry_run=self.check,
            timeout=self.timeout,
            become=self.become,
            become_user=self.become_user,
        )
        if connection == "local":
            return LocalExecutor(host, **options)
        if connection == "ssh":
            return SSHExecutor(
                host,
                remote_user=self.remote_user,
                private_key_file=self.private_key_file,
                **options,
            )
        raise ValueError(f"Unknown connection type '{connection}'")

    @staticmethod
    def _resource_name(data: dict[str, Any]) -> Optional[str]:
        for key in ("path", "dest", "name", "cmd", "requirements"):
            value = data.get(key)
            if value:
                return str(value)
        return None
