import json
from datetime import datetime, timezone

import pytest

from vps_setup import cli
from vps_setup.errors import ExecutionError
from vps_setup.store import ConfigStore
from vps_setup.types import BatchItem, BatchSummary, HistoryEntry, ProbeResult, RecapResult, RunResult, Server


@pytest.fixture(autouse=True)
def no_color(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")


class FakeProbe:
    probed: list[str] = []
    reachable = True

    def test_connection(self, server):
        FakeProbe.probed.append(server.name)
        if FakeProbe.reachable:
            return ProbeResult(success=True, latency=0.012, os="debian", version="12")
        return ProbeResult(success=False, latency=0.5, error="Connection refused")


@pytest.fixture(autouse=True)
def fake_probe(monkeypatch):
    monkeypatch.setattr(FakeProbe, "probed", [])
    monkeypatch.setattr(FakeProbe, "reachable", True)
    monkeypatch.setattr(cli, "ConnectivityProbe", FakeProbe)
    return FakeProbe


@pytest.fixture
def config_dir(tmp_path):
    path = tmp_path / "cfg"
    assert cli.main(["-c", str(path), "init"]) == 0
    return path


def run(config_dir, *argv):
    return cli.main(["-c", str(config_dir), *argv])


def test_init_seeds_profiles(config_dir, capsys):
    assert run(config_dir, "profile", "list") == 0
    out = capsys.readouterr().out
    assert "full-stack (default)" in out
    assert "minimal - docker, security" in out


def test_server_add_list_show(config_dir, capsys):
    assert run(config_dir, "server", "add", "web", "-H", "10.0.0.5", "-u", "deploy", "-p", "2222", "-t", "prod,web") == 0
    assert run(config_dir, "server", "ls") == 0
    out = capsys.readouterr().out
    assert 'Server "web" saved' in out
    assert "o web - deploy@10.0.0.5:2222 [prod, web]" in out

    assert run(config_dir, "server", "show", "web", "--json") == 0
    data = json.loads(capsys.readouterr().out)
    assert data["port"] == 2222
    assert data["created_at"]


def test_invalid_server_lists_every_problem(config_dir, capsys):
    assert run(config_dir, "server", "add", "bad name", "-H", "not_a_host!", "-u", "root") == 1
    err = capsys.readouterr().err
    assert "Invalid server:" in err
    assert err.count("  - ") >= 2
    assert ConfigStore(config_dir).list_servers() == []


def test_duplicate_server_is_rejected(config_dir, capsys):
    run(config_dir, "server", "add", "web", "-H", "10.0.0.5", "-u", "root")
    assert run(config_dir, "server", "add", "web", "-H", "10.0.0.6", "-u", "root") == 1
    assert 'Server "web" already exists' in capsys.readouterr().err


def test_server_edit_and_remove(config_dir, capsys):
    run(config_dir, "server", "add", "web", "-H", "10.0.0.5", "-u", "root")
    assert run(config_dir, "server", "edit", "web", "--port", "2200", "--notes", "primary") == 0
    server = ConfigStore(config_dir).get_server("web")
    assert (server.port, server.notes) == (2200, "primary")

    assert run(config_dir, "server", "rm", "web") == 0
    assert run(config_dir, "server", "show", "web") == 1
    assert 'Server "web" not found' in capsys.readouterr().err


def test_profile_create_edit_duplicate_delete(config_dir):
    store = ConfigStore(config_dir)
    assert run(config_dir, "profile", "create", "web", "--caddy", "--php-fpm", "--set", "php_version=8.3") == 0
    assert store.get_profile("web").components.enabled() == ["php_fpm", "caddy"]
    assert store.get_profile("web").overrides == {"php_version": 8.3}

    assert run(config_dir, "profile", "edit", "web", "--enable", "security", "--disable", "caddy", "--unset", "php_version") == 0
    edited = store.get_profile("web")
    assert edited.components.enabled() == ["php_fpm", "security"]
    assert edited.overrides == {}

    assert run(config_dir, "profile", "duplicate", "web", "web-copy") == 0
    assert store.get_profile("web-copy").description == "Copy of web"

    assert run(config_dir, "profile", "delete", "web-copy") == 0
    assert not store.profile_exists("web-copy")


def test_profile_without_components_is_invalid(config_dir, capsys):
    assert run(config_dir, "profile", "create", "empty") == 1
    assert "At least one component must be enabled" in capsys.readouterr().err


def test_config_set_and_show(config_dir, capsys):
    assert run(config_dir, "config", "set", "history_retention_days", "7") == 0
    assert run(config_dir, "config", "set", "log_level", "WARN") == 0
    assert run(config_dir, "config", "show", "--json") == 0
    out = capsys.readouterr().out
    data = json.loads(out[out.index("{"):])
    assert data["history_retention_days"] == 7
    assert data["log_level"] == "warn"

    assert run(config_dir, "config", "set", "history_retention_days", "soon") == 1


def test_history_listing_and_clear(config_dir, capsys):
    store = ConfigStore(config_dir)
    store.add_server(Server(name="web", host="10.0.0.5", user="root"))
    store.append_history(
        "web",
        HistoryEntry(
            timestamp="2026-01-02T03:04:05+00:00", server="web", profile="minimal", status="failed",
            duration=12.5, changes=1, error="failed=1 unreachable=0 (exit code 2)",
        ),
    )

    assert run(config_dir, "history", "web", "-j") == 0
    entries = json.loads(capsys.readouterr().out)
    assert [e["status"] for e in entries] == ["failed"]

    assert run(config_dir, "history", "web", "--clear") == 0
    assert run(config_dir, "history", "web") == 0
    out = capsys.readouterr().out
    assert 'History cleared for "web"' in out
    assert 'No history for "web"' in out


def test_setup_all_reports_summary_and_exit_code(config_dir, capsys, monkeypatch):
    class FakeRunner:
        def __init__(self, store, **kwargs):
            pass

        def run_all(self, profile_name, options):
            assert profile_name == "full-stack"
            return BatchSummary(
                profile=profile_name,
                items=[
                    BatchItem(server="a", success=True, duration=65.0, status="success"),
                    BatchItem(server="b", success=False, duration=1.0, status="failed", error="SSH down"),
                ],
            )

    run(config_dir, "server", "add", "a", "-H", "10.0.0.1", "-u", "root")
    monkeypatch.setattr(cli, "ProvisionRunner", FakeRunner)

    assert run(config_dir, "setup", "--all") == 1
    out = capsys.readouterr().out
    assert "ok     a (1m 5s)" in out
    assert "failed b (1s) - SSH down" in out
    assert "Total: 1/2 succeeded | Failures: 1" in out


def test_setup_single_failure_prints_result(config_dir, capsys, monkeypatch):
    failed = RunResult(
        server="a", profile="minimal", status="failed", success=False, duration=3.0,
        recap=RecapResult(ok=2, changed=0, unreachable=0, failed=1), error="failed=1 unreachable=0 (exit code 2)",
    )

    class FakeRunner:
        def __init__(self, store, **kwargs):
            pass

        def run(self, server, profile, options):
            raise ExecutionError(failed.error, result=failed)

    monkeypatch.setattr(cli, "ProvisionRunner", FakeRunner)

    assert run(config_dir, "setup", "a", "-p", "minimal") == 1
    captured = capsys.readouterr()
    assert "a::minimal failed - failed=1 unreachable=0 duration=3s" in captured.out
    assert "failed=1 unreachable=0 (exit code 2)" in captured.err


def test_setup_requires_server_or_all(config_dir, capsys):
    assert run(config_dir, "setup") == 1
    assert "A server name is required" in capsys.readouterr().err


def test_format_helpers():
    assert cli.format_duration(4.4) == "4s"
    assert cli.format_duration(125) == "2m 5s"

    server = Server(name="web", host="h.example.com", user="root", last_provisioned="2026-03-01T10:00:00+00:00")
    assert cli.format_server_line(server) == "* web - root@h.example.com:22 (last: 2026-03-01)"

    entry = HistoryEntry(
        timestamp="2026-03-01T10:00:00Z", server="web", profile="minimal", status="success", duration=42.0, changes=3
    )
    now = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
    assert cli.format_history_entry(entry, now=now) == (
        "2026-03-01T10:00:00Z minimal success - changes=3 duration=42s (2h ago)"
    )


def test_parse_overrides():
    assert cli.parse_overrides(["a=1", "b=true", "c=text", "d="]) == {"a": 1, "b": True, "c": "text", "d": ""}
    with pytest.raises(ValueError):
        cli.parse_overrides(["missing"])


def test_server_add_tests_connection_by_default(config_dir, capsys, fake_probe):
    assert run(config_dir, "server", "add", "web", "-H", "10.0.0.5", "-u", "root") == 0
    assert fake_probe.probed == ["web"]
    assert "SSH OK (debian 12) in 12ms" in capsys.readouterr().out

    assert run(config_dir, "server", "add", "db", "-H", "10.0.0.6", "-u", "root", "--no-test") == 0
    assert fake_probe.probed == ["web"]


def test_server_add_keeps_server_when_unreachable(config_dir, capsys, fake_probe):
    fake_probe.reachable = False

    assert run(config_dir, "server", "add", "web", "-H", "10.0.0.5", "-u", "root") == 0

    assert "SSH connection failed: Connection refused" in capsys.readouterr().out
    assert ConfigStore(config_dir).server_exists("web")


def test_history_rejects_path_like_names(config_dir, capsys):
    profile_file = ConfigStore(config_dir).profile_path("full-stack")

    assert run(config_dir, "history", "../profiles/full-stack", "--clear") == 1

    assert "Invalid server:" in capsys.readouterr().err
    assert profile_file.exists()
