import threading
import time
from pathlib import Path

import pytest

from stagehand_automation import runner as runner_mod
from stagehand_automation.errors import HostUnreachable
from stagehand_automation.inventory import Inventory
from stagehand_automation.types import ActionResult, HostConfig, PlaySpec, Playbook, TaskSpec


def make_inventory(*names: str) -> Inventory:
    hosts = {name: HostConfig(name=name, connection="local") for name in names}
    return Inventory(hosts, {})


def make_playbook(*plays: PlaySpec) -> Playbook:
    return Playbook(path=Path("site.yml"), plays=list(plays))


class DummyOperation:
    def __init__(self, spec: dict):
        self.spec = spec

    def apply(self, host: HostConfig, executor):
        return ActionResult(host=host.name, action="dummy", changed=bool(self.spec.get("changed")), details="ok")


@pytest.mark.parametrize(
    "tags, only, skip, expected",
    [
        (["all"], ["all"], [], True),
        (["all", "web"], ["web"], [], True),
        (["all", "db"], ["web"], [], False),
        (["all", "web"], ["all"], ["web"], False),
        (["all", "web", "db"], ["db"], ["cache"], True),
    ],
)
def test_tags_match(tags, only, skip, expected):
    assert runner_mod.tags_match(tags, only, skip) is expected


def test_runner_invokes_registered_operations(monkeypatch):
    task = TaskSpec(name="demo", action="dummy", args={"changed": True})
    playbook = make_playbook(PlaySpec(name="play", hosts="all", tasks=[task]))
    seen: list[ActionResult] = []

    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"dummy": DummyOperation})

    runner = runner_mod.PlaybookRunner(playbook, make_inventory("local"), result_callback=seen.append)
    stats = runner.run()

    assert len(seen) == 1
    assert seen[0].action == "dummy"
    assert stats.summarize("local") == {"ok": 1, "changed": 1, "unreachable": 0, "failures": 0, "skipped": 0}
    assert stats.exit_code() == 0


def test_runner_filters_tasks_by_tags(monkeypatch):
    calls: list[str] = []

    class RecordingOperation:
        def __init__(self, spec: dict):
            self.name = spec["name"]

        def apply(self, host: HostConfig, executor):
            calls.append(self.name)
            return ActionResult(host=host.name, action="record", changed=False, details="ok")

    tasks = [
        TaskSpec(name="web", action="record", args={"name": "web"}, tags=["web"]),
        TaskSpec(name="db", action="record", args={"name": "db"}, tags=["db"]),
        TaskSpec(name="both", action="record", args={"name": "both"}, tags=["web", "db"]),
    ]
    playbook = make_playbook(PlaySpec(name="play", hosts="all", tasks=tasks))
    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"record": RecordingOperation})

    runner = runner_mod.PlaybookRunner(
        playbook, make_inventory("local"), only_tags=["web"], skip_tags=["db"]
    )
    runner.run()

    assert calls == ["web"]


def test_play_tags_apply_to_tasks():
    task = TaskSpec(name="demo", action="dummy", tags=["extra"])
    play = PlaySpec(name="play", hosts="all", tasks=[task], tags=["deploy"])
    runner = runner_mod.PlaybookRunner(make_playbook(play), make_inventory("local"), only_tags=["deploy"])

    [(listed_play, tasks)] = runner.list_tasks()

    assert tasks == [task]
    assert runner.task_tags(listed_play, task) == ["all", "deploy", "extra"]


def test_failed_host_takes_no_further_tasks(monkeypatch):
    calls: list[tuple[str, str]] = []

    class FlakyOperation:
        def __init__(self, spec: dict):
            self.spec = spec

        def apply(self, host: HostConfig, executor):
            calls.append((host.name, self.spec["step"]))
            failed = host.name == "web2" and self.spec["step"] == "first"
            return ActionResult(host=host.name, action="flaky", changed=False, details="x", failed=failed)

    tasks = [
        TaskSpec(name="first", action="flaky", args={"step": "first"}),
        TaskSpec(name="second", action="flaky", args={"step": "second"}),
    ]
    playbook = make_playbook(PlaySpec(name="play", hosts="all", tasks=tasks))
    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"flaky": FlakyOperation})

    runner = runner_mod.PlaybookRunner(playbook, make_inventory("web1", "web2"))
    stats = runner.run()

    assert ("web2", "second") not in calls
    assert ("web1", "second") in calls
    assert stats.summarize("web2")["failures"] == 1
    assert runner.failed_hosts == ["web2"]
    assert stats.exit_code() == 2


def test_ignore_errors_keeps_host_active(monkeypatch):
    class FailingOperation:
        def __init__(self, spec: dict):
            self.spec = spec

        def apply(self, host: HostConfig, executor):
            return ActionResult(host=host.name, action="fail", changed=False, details="boom", failed=True)

    tasks = [
        TaskSpec(name="first", action="fail", ignore_errors=True),
        TaskSpec(name="second", action="dummy"),
    ]
    playbook = make_playbook(PlaySpec(name="play", hosts="all", tasks=tasks))
    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"fail": FailingOperation, "dummy": DummyOperation})

    runner = runner_mod.PlaybookRunner(playbook, make_inventory("local"))
    stats = runner.run()

    assert stats.summarize("local")["ok"] == 2
    assert stats.summarize("local")["failures"] == 0
    assert runner.failed_hosts == []


def test_unreachable_host_is_recorded(monkeypatch):
    class UnreachableOperation:
        def __init__(self, spec: dict):
            self.spec = spec

        def apply(self, host: HostConfig, executor):
            if host.name == "down":
                raise HostUnreachable(host.name, "Connection timed out")
            return ActionResult(host=host.name, action="ping", changed=False, details="pong")

    tasks = [TaskSpec(name="ping", action="ping"), TaskSpec(name="again", action="ping")]
    playbook = make_playbook(PlaySpec(name="play", hosts="all", tasks=tasks))
    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"ping": UnreachableOperation})

    stats = runner_mod.PlaybookRunner(playbook, make_inventory("up", "down")).run()

    assert stats.summarize("down")["unreachable"] == 1
    assert stats.summarize("up")["ok"] == 2
    assert stats.exit_code() == 3


def test_runner_handles_operation_init_failure(monkeypatch):
    class BadOp:
        def __init__(self, spec: dict):  # noqa: ARG002
            raise ValueError("bad init")

    seen: list[ActionResult] = []
    task = TaskSpec(name="demo", action="bad")
    playbook = make_playbook(PlaySpec(name="play", hosts="all", tasks=[task]))

    monkeypatch.setattr("stagehand_automation.runner.OPERATION_REGISTRY", {"bad": BadOp})

    runner_mod.PlaybookRunner(playbook, make_inventory("local"), result_callback=seen.append).run()

    assert len(seen) == 1
    assert seen[0].failed is True
    assert "bad init" in seen[0].details


def test_unknown_operation_fails_host(monkeypatch):
    seen: list[ActionResult] = []
    task = TaskSpec(name="demo", action="nope")
    playbook = make_playbook(PlaySpec(name="play", hosts="all", tasks=[task]))
    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {})

    stats = runner_mod.PlaybookRunner(playbook, make_inventory("local"), result_callback=seen.append).run()

    assert "unknown operation" in seen[0].details
    assert stats.exit_code() == 2


def test_start_at_task_skips_earlier_tasks(monkeypatch):
    calls: list[str] = []

    class RecordingOperation:
        def __init__(self, spec: dict):
            self.name = spec["name"]

        def apply(self, host: HostConfig, executor):
            calls.append(self.name)
            return ActionResult(host=host.name, action="record", changed=False, details="ok")

    tasks = [TaskSpec(name=n, action="record", args={"name": n}) for n in ("one", "two", "three")]
    later = PlaySpec(name="later", hosts="all", tasks=[TaskSpec(name="four", action="record", args={"name": "four"})])
    playbook = make_playbook(PlaySpec(name="play", hosts="all", tasks=tasks), later)
    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"record": RecordingOperation})

    runner_mod.PlaybookRunner(playbook, make_inventory("local"), start_at_task="two").run()

    assert calls == ["two", "three", "four"]


def test_step_prompt_controls_execution(monkeypatch):
    calls: list[str] = []
    answers = iter(["n", "y", "c"])

    class RecordingOperation:
        def __init__(self, spec: dict):
            self.name = spec["name"]

        def apply(self, host: HostConfig, executor):
            calls.append(self.name)
            return ActionResult(host=host.name, action="record", changed=False, details="ok")

    prompted: list[str] = []

    def prompt(task: TaskSpec) -> str:
        prompted.append(task.name)
        return next(answers)

    tasks = [TaskSpec(name=n, action="record", args={"name": n}) for n in ("a", "b", "c", "d")]
    playbook = make_playbook(PlaySpec(name="play", hosts="all", tasks=tasks))
    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"record": RecordingOperation})

    runner_mod.PlaybookRunner(playbook, make_inventory("local"), step=True, prompt=prompt).run()

    assert prompted == ["a", "b", "c"]
    assert calls == ["b", "c", "d"]


def test_when_condition_skips_and_templates_args(monkeypatch):
    seen_specs: list[dict] = []

    class RecordingOperation:
        def __init__(self, spec: dict):
            seen_specs.append(spec)

        def apply(self, host: HostConfig, executor):
            return ActionResult(host=host.name, action="record", changed=False, details="ok")

    tasks = [
        TaskSpec(name="skipped", action="record", args={"path": "/x"}, when="env == 'prod'"),
        TaskSpec(name="templated", action="record", args={"path": "/srv/{{ env }}/{{ inventory_hostname }}"}),
    ]
    play = PlaySpec(name="play", hosts="all", tasks=tasks, vars={"env": "dev"})
    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"record": RecordingOperation})

    stats = runner_mod.PlaybookRunner(make_playbook(play), make_inventory("local")).run()

    assert seen_specs == [{"path": "/srv/dev/local"}]
    assert stats.summarize("local")["skipped"] == 1


def test_extra_vars_override_play_vars(monkeypatch):
    seen_specs: list[dict] = []

    class RecordingOperation:
        def __init__(self, spec: dict):
            seen_specs.append(spec)

        def apply(self, host: HostConfig, executor):
            return ActionResult(host=host.name, action="record", changed=False, details="ok")

    task = TaskSpec(name="t", action="record", args={"name": "{{ release }}"})
    play = PlaySpec(name="play", hosts="all", tasks=[task], vars={"release": "1.0"})
    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"record": RecordingOperation})

    runner_mod.PlaybookRunner(make_playbook(play), make_inventory("local"), extra_vars={"release": "2.0"}).run()

    assert seen_specs == [{"name": "2.0"}]


def test_undefined_variable_fails_only_that_host(monkeypatch):
    task = TaskSpec(name="t", action="dummy", args={"name": "{{ missing }}"})
    play = PlaySpec(name="play", hosts="all", tasks=[task])
    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"dummy": DummyOperation})

    stats = runner_mod.PlaybookRunner(make_playbook(play), make_inventory("local")).run()

    assert stats.summarize("local")["failures"] == 1


def test_hosts_run_concurrently_up_to_forks(monkeypatch):
    active = 0
    peak = 0
    lock = threading.Lock()

    class SlowOperation:
        def __init__(self, spec: dict):
            self.spec = spec

        def apply(self, host: HostConfig, executor):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with lock:
                active -= 1
            return ActionResult(host=host.name, action="slow", changed=True, details="ok")

    task = TaskSpec(name="slow", action="slow")
    playbook = make_playbook(PlaySpec(name="play", hosts="all", tasks=[task]))
    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"slow": SlowOperation})
    seen: list[ActionResult] = []
    names = [f"host{i}" for i in range(6)]

    stats = runner_mod.PlaybookRunner(
        playbook, make_inventory(*names), forks=2, result_callback=seen.append
    ).run()

    assert 1 < peak <= 2
    assert [r.host for r in seen] == names
    assert sum(stats.summarize(n)["changed"] for n in names) == 6


def test_play_without_matching_hosts_is_skipped(monkeypatch):
    plays_seen: list[tuple[str, int]] = []
    task = TaskSpec(name="t", action="dummy")
    play = PlaySpec(name="play", hosts="nonexistent", tasks=[task])
    monkeypatch.setattr(runner_mod, "OPERATION_REGISTRY", {"dummy": DummyOperation})

    stats = runner_mod.PlaybookRunner(
        make_playbook(play),
        make_inventory("local"),
        play_callback=lambda p, hosts: plays_seen.append((p.name, len(hosts))),
    ).run()

    assert plays_seen == [("play", 0)]
    assert stats.hosts() == []


def test_executor_selection_honours_connection_override():
    runner = runner_mod.PlaybookRunner(make_playbook(), make_inventory("local"), connection="ssh")
    executor = runner._executor_for(HostConfig(name="local", connection="local"))
    assert executor.is_local is False

    runner = runner_mod.PlaybookRunner(make_playbook(), make_inventory("local"))
    with pytest.raises(ValueError):
        runner._executor_for(HostConfig(name="odd", connection="winrm"))
