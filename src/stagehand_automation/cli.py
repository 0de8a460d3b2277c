from __future__ import annotations

import argparse
import importlib
import importlib.util
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import DEFAULT_CONFIG, StagehandConfig, load_config
from .errors import ConfigError, InventoryError, PlaybookError, StagehandError, VarsError
from .inventory import InventoryLoader
from .operations import OPERATION_REGISTRY
from .playbook import PlaybookLoader
from .retry import write_retry_file
from .runner import STEP_CONTINUE, STEP_NO, STEP_YES, PlaybookRunner
from .stats import EXIT_ERROR, EXIT_OK, AggregateStats
from .types import ActionResult, HostConfig, PlaySpec, TaskSpec
from .variables import parse_extra_vars


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stagehand playbook runner")
    parser.add_argument("playbooks", nargs="+", type=Path, help="Playbook file(s) to run")
    parser.add_argument("-i", "--inventory", help="Inventory file or comma separated host list")
    parser.add_argument(
        "-e",
        "--extra-vars",
        action="append",
        default=[],
        help="Extra variables as key=value, YAML/JSON, or @file (repeatable)",
    )
    parser.add_argument("-t", "--tags", default="all", help="Only run tasks tagged with these values (default: all)")
    parser.add_argument("--skip-tags", default="", help="Only run tasks whose tags do not match these values")
    parser.add_argument("--syntax-check", action="store_true", help="Perform a syntax check on the playbook only")
    parser.add_argument("--list-tasks", action="store_true", help="List all tasks that would be executed")
    parser.add_argument("--list-hosts", action="store_true", help="List the hosts each play would run against")
    parser.add_argument("--step", action="store_true", help="Confirm each task before running it")
    parser.add_argument("--start-at-task", help="Start the playbook at the task matching this name")
    parser.add_argument("-l", "--limit", help="Further limit selected hosts to a pattern or @retry-file")
    parser.add_argument("-C", "--check", action="store_true", help="Report changes without making them")
    parser.add_argument("-D", "--diff", action="store_true", help="Show the before/after state of changed files")
    parser.add_argument("-c", "--connection", choices=["local", "ssh"], help="Override the connection type")
    parser.add_argument("-u", "--user", help="Remote user for ssh connections")
    parser.add_argument("-T", "--timeout", type=int, help="Connection timeout in seconds")
    parser.add_argument("-f", "--forks", type=int, help="Number of hosts to contact in parallel")
    parser.add_argument("--private-key", type=Path, help="Private key file for ssh connections")
    parser.add_argument("-b", "--become", action="store_true", help="Run operations with sudo")
    parser.add_argument("--become-user", default="root", help="User to become (default: root)")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to stagehand config file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Python logging level (default: WARNING)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(args.config)
        _load_plugins(cfg)
    except ConfigError as exc:
        print(colorize(f"Configuration failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_ERROR

    missing = [str(p) for p in args.playbooks if not p.is_file()]
    if missing:
        print(colorize(f"Playbook not found: {', '.join(missing)}", Ansi.RED), file=sys.stderr)
        return EXIT_ERROR

    try:
        inventory = InventoryLoader().load(args.inventory or cfg.inventory)
        extra_vars = parse_extra_vars(args.extra_vars)
    except (InventoryError, VarsError) as exc:
        print(colorize(f"Setup failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_ERROR

    stats = AggregateStats()
    retry_files: list[Path] = []
    listing_only = args.syntax_check or args.list_hosts or args.list_tasks
    for playbook_path in args.playbooks:
        try:
            playbook = PlaybookLoader().load(playbook_path)
        except PlaybookError as exc:
            print(colorize(f"Playbook validation failed: {exc}", Ansi.RED), file=sys.stderr)
            return EXIT_ERROR

        runner = PlaybookRunner(
            playbook,
            inventory,
            only_tags=_split_tags(args.tags),
            skip_tags=_split_tags(args.skip_tags),
            extra_vars=extra_vars,
            subset=args.limit,
            forks=args.forks or cfg.forks,
            check=args.check,
            diff=args.diff,
            start_at_task=args.start_at_task,
            step=args.step,
            prompt=prompt_step,
            connection=args.connection,
            timeout=args.timeout or cfg.timeout,
            remote_user=args.user or cfg.remote_user,
            private_key_file=args.private_key or cfg.private_key_file,
            become=args.become,
            become_user=args.become_user,
            stats=stats,
            play_callback=print_play,
            task_callback=print_task,
            result_callback=lambda result: print_result(result, diff=args.diff),
        )

        if listing_only:
            print(f"\nplaybook: {playbook_path}")
            try:
                if args.list_hosts:
                    print_host_listing(runner.list_hosts())
                if args.list_tasks:
                    print_task_listing(runner)
            except InventoryError as exc:
                print(colorize(f"Host selection failed: {exc}", Ansi.RED), file=sys.stderr)
                return EXIT_ERROR
            continue

        try:
            runner.run()
        except StagehandError as exc:
            print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
            return EXIT_ERROR
        except Exception as exc:  # noqa: BLE001
            if logging.getLogger().isEnabledFor(logging.DEBUG):
                raise
            print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
            return EXIT_ERROR

        if runner.failed_hosts and cfg.retry_files_enabled:
            path = write_retry_file(playbook_path, runner.failed_hosts, cfg.retry_files_save_path)
            if path is not None:
                retry_files.append(path)

    if listing_only:
        return EXIT_OK

    print(render_recap(stats))
    for path in retry_files:
        print(colorize(f"to retry, use: --limit @{path}", Ansi.YELLOW))
    return stats.exit_code()


def prompt_step(task: TaskSpec) -> str:
    try:
        answer = input(f"Perform task: {task.name} (y/n/c): ")
    except EOFError:
        return STEP_NO
    answer = answer.strip().lower()[:1]
    if answer in (STEP_NO, STEP_CONTINUE):
        return answer
    return STEP_YES


def _split_tags(value: Optional[str]) -> list[str]:
    return [tag.strip() for tag in (value or "").split(",") if tag.strip()]


def _banner(text: str) -> str:
    return f"\n{text} " + "*" * max(3, 72 - len(text))


def print_play(play: PlaySpec, hosts: list[HostConfig]) -> None:
    print(_banner(f"PLAY [{play.name}]"))
    if not hosts:
        print(colorize("skipping: no hosts matched", Ansi.BLUE))


def print_task(task: TaskSpec) -> None:
    print(_banner(f"TASK: [{task.name}]"))


def print_result(result: ActionResult, *, diff: bool = False) -> None:
    if not should_display_result(result, logging.getLogger().getEffectiveLevel()):
        return
    print(format_result(result))
    if diff and result.changed and result.data.get("diff"):
        before = result.data["diff"].get("before", {})
        after = result.data["diff"].get("after", {})
        print(colorize(f"--- before: {before.get('state')}", Ansi.RED))
        print(colorize(f"+++ after: {after.get('state')}", Ansi.GREEN))


def format_result(result: ActionResult) -> str:
    status = "changed" if result.changed else "ok"
    color: Optional[str] = None
    if result.unreachable:
        status = "unreachable"
        color = Ansi.RED
    elif result.failed:
        if "unknown operation" in result.details.lower():
            status = "unknown"
            color = Ansi.ORANGE
        else:
            status = "failed"
            color = Ansi.RED
    elif result.skipped:
        status = "skipped"
        color = Ansi.BLUE
    elif result.changed:
        color = Ansi.YELLOW
    else:
        color = Ansi.GREEN
    resource = f"[{result.resource}]" if result.resource else ""
    line = f"{result.host}::{result.action}{resource} {status} - {result.details}"
    return colorize(line, color)


def should_display_result(result: ActionResult, log_level: int) -> bool:
    if result.failed or result.changed or result.unreachable:
        return True
    return log_level <= logging.INFO


def print_host_listing(listing) -> None:
    for play, hosts in listing:
        print(f"\n  play #{play.name} ({play.hosts}): host count={len(hosts)}")
        for host in hosts:
            print(f"    {host.name}")


def print_task_listing(runner: PlaybookRunner) -> None:
    for play, tasks in runner.list_tasks():
        print(f"\n  play #{play.name} ({play.hosts}):")
        for task in tasks:
            tags = ", ".join(runner.task_tags(play, task))
            print(f"    {task.name}\tTAGS: [{tags}]")


def render_recap(stats: AggregateStats) -> str:
    lines = [_banner("PLAY RECAP")]
    hosts = stats.hosts()
    width = max((len(h) for h in hosts), default=0)
    for host in hosts:
        counts = stats.summarize(host)
        text = (
            f"{host.ljust(width)} : ok={counts['ok']} changed={counts['changed']} "
            f"unreachable={counts['unreachable']} failed={counts['failures']} skipped={counts['skipped']}"
        )
        if counts["failures"] or counts["unreachable"]:
            color = Ansi.RED
        elif counts["changed"]:
            color = Ansi.YELLOW
        else:
            color = Ansi.GREEN
        lines.append(colorize(text, color))
    return "\n".join(lines)


def _load_plugins(cfg: StagehandConfig) -> None:
    for directory in cfg.plugin_dirs:
        directory = Path(directory)
        if not directory.is_dir():
            logging.warning("Plugin directory %s does not exist", directory)
            continue
        for path in sorted(directory.glob("*.py")):
            spec = importlib.util.spec_from_file_location(f"stagehand_plugin_{path.stem}", path)
            if spec is None or spec.loader is None:
                continue
            module = importlib.util.module_from_spec(spec)
            try:
                spec.loader.exec_module(module)
            except Exception as exc:  # noqa: BLE001
                raise ConfigError(f"failed to load plugin {path}: {exc}") from exc
            _register_plugin(module, str(path))
    for name in cfg.plugin_modules:
        try:
            module = importlib.import_module(name)
        except ImportError as exc:
            raise ConfigError(f"failed to import plugin module {name}: {exc}") from exc
        _register_plugin(module, name)


def _register_plugin(module, origin: str) -> None:
    register = getattr(module, "register_operations", None)
    if register is None:
        logging.warning("Plugin %s has no register_operations()", origin)
        return
    register(OPERATION_REGISTRY)
    logging.debug("Loaded plugin %s", origin)


if __name__ == "__main__":
    raise SystemExit(main())
