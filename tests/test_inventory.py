from pathlib import Path
import textwrap

import pytest

from stagehand_automation.errors import InventoryError
from stagehand_automation.inventory import InventoryLoader


def write(path: Path, text: str) -> Path:
    path.write_text(textwrap.dedent(text).strip() + "\n")
    return path


def names(hosts) -> list[str]:
    return [host.name for host in hosts]


def test_inline_host_list() -> None:
    inventory = InventoryLoader().load("localhost,")

    assert list(inventory.hosts) == ["localhost"]
    assert inventory.hosts["localhost"].connection == "local"
    assert names(inventory.select("all")) == ["localhost"]


def test_inline_list_remote_hosts_default_to_ssh() -> None:
    inventory = InventoryLoader().load("web1, web2")

    assert inventory.hosts["web1"].connection == "ssh"
    assert names(inventory.select("web*")) == ["web1", "web2"]


def test_ini_groups_vars_and_children(tmp_path: Path) -> None:
    path = write(
        tmp_path / "hosts",
        """
        # analytics cluster
        localhost ansible_connection=local

        [web]
        web1 ansible_host=10.0.0.11 ansible_port=2222 role=frontend
        web2 address=10.0.0.12 user=deploy

        [db]
        db1

        [web:vars]
        http_port=8080
        role=generic

        [cluster:children]
        web
        db
        """,
    )

    inventory = InventoryLoader().load(str(path))

    web1 = inventory.hosts["web1"]
    assert web1.address == "10.0.0.11"
    assert web1.port == 2222
    assert web1.variables == {"http_port": 8080, "role": "frontend"}
    assert inventory.hosts["web2"].user == "deploy"
    assert inventory.hosts["web2"].variables["role"] == "generic"
    assert inventory.hosts["localhost"].connection == "local"
    assert names(inventory.select("cluster")) == ["web1", "web2", "db1"]
    assert names(inventory.select("ungrouped")) == ["localhost"]


def test_yaml_inventory(tmp_path: Path) -> None:
    path = write(
        tmp_path / "hosts.yml",
        """
        all:
          vars:
            tier: base
          hosts:
            localhost:
              ansible_connection: local
          children:
            analytics:
              vars:
                tier: analytics
              hosts:
                insights1:
                  ansible_host: 54.175.221.251
        """,
    )

    inventory = InventoryLoader().load(str(path))

    assert names(inventory.select("analytics")) == ["insights1"]
    assert inventory.hosts["insights1"].address == "54.175.221.251"
    assert inventory.hosts["insights1"].variables["tier"] == "analytics"
    assert inventory.hosts["localhost"].variables["tier"] == "base"


@pytest.mark.parametrize(
    "pattern, expected",
    [
        ("all", ["web1", "web2", "db1"]),
        ("*", ["web1", "web2", "db1"]),
        ("web:db", ["web1", "web2", "db1"]),
        ("all:!db", ["web1", "web2"]),
        ("web,&prod", ["web1"]),
        ("web?", ["web1", "web2"]),
        ("db1", ["db1"]),
        ("missing", []),
    ],
)
def test_select_patterns(tmp_path: Path, pattern: str, expected: list[str]) -> None:
    path = write(
        tmp_path / "hosts",
        """
        [web]
        web1
        web2

        [db]
        db1

        [prod]
        web1
        db1
        """,
    )

    inventory = InventoryLoader().load(str(path))

    assert names(inventory.select(pattern)) == expected


def test_subset_limits_selection(tmp_path: Path) -> None:
    inventory = InventoryLoader().load("web1,web2,db1")

    assert names(inventory.select("all", subset="web*")) == ["web1", "web2"]


def test_subset_from_retry_file(tmp_path: Path) -> None:
    retry = tmp_path / "site.retry"
    retry.write_text("db1\nunknown\n")
    inventory = InventoryLoader().load("web1,web2,db1")

    assert names(inventory.select("all", subset=f"@{retry}")) == ["db1"]


def test_missing_inventory_file(tmp_path: Path) -> None:
    with pytest.raises(InventoryError, match="does not exist"):
        InventoryLoader().load(str(tmp_path / "nope"))


def test_empty_inventory_is_fatal(tmp_path: Path) -> None:
    path = write(tmp_path / "hosts", "[web]\n")

    with pytest.raises(InventoryError, match="does not define any hosts"):
        InventoryLoader().load(str(path))


def test_bad_host_variable_line(tmp_path: Path) -> None:
    path = write(tmp_path / "hosts", "web1 standalone\n")

    with pytest.raises(InventoryError):
        InventoryLoader().load(str(path))


@pytest.mark.parametrize(
    "body, message",
    [
        ("all:\n  hosts: [localhost]\n", "hosts of group 'all' must be a mapping"),
        ("all:\n  hosts:\n    web1: 10.0.0.1\n", "variables of host 'web1' must be a mapping"),
        ("all:\n  hosts:\n    web1:\n  vars: [tier]\n", "vars of group 'all' must be a mapping"),
        ("all:\n  children: [web]\n", "children of group 'all' must be a mapping"),
    ],
)
def test_malformed_yaml_inventory(tmp_path: Path, body: str, message: str) -> None:
    path = tmp_path / "hosts.yml"
    path.write_text(body)

    with pytest.raises(InventoryError, match=message):
        InventoryLoader().load(str(path))


def test_child_group_vars_override_parent(tmp_path: Path) -> None:
    path = write(
        tmp_path / "hosts",
        """
        [web]
        w1

        [prod:children]
        web

        [web:vars]
        x=child

        [prod:vars]
        x=parent
        only_parent=1
        """,
    )

    w1 = InventoryLoader().load(str(path)).hosts["w1"]

    assert w1.variables["x"] == "child"
    assert w1.variables["only_parent"] == 1
