"""Tests for the ConvergenceExecutor."""
import asyncio
import json

import pytest
from puppet_converge.catalog import (
    Catalog,
    CatalogBuilder,
    CycleError,
    ResourceKind,
    ResourceRef,
)
from puppet_converge.converge import (
    ConvergenceExecutor,
    EngineOptions,
    ResourceState,
)
from puppet_converge.host import HostError, LocalHost, ServiceStatus
from conftest import FakeFile

CONF = ResourceRef(ResourceKind.FILE, "/etc/app.conf")
SERVICE = ResourceRef(ResourceKind.SERVICE, "app")


def app_catalog():
    """A config file that notifies its service."""
    catalog = Catalog("node1")
    conf = catalog.declare(ResourceKind.FILE, "/etc/app.conf", {"ensure": "file", "content": "new\n"})
    service = catalog.declare(ResourceKind.SERVICE, "app", {"ensure": "running", "enable": True})
    catalog.notify(conf, service)
    return catalog


def chain_catalog():
    """a <- b <- c, plus an independent d."""
    catalog = Catalog("node1")
    a = catalog.declare(ResourceKind.PACKAGE, "a", {"ensure": "installed"})
    b = catalog.declare(ResourceKind.PACKAGE, "b", {"ensure": "installed"})
    c = catalog.declare(ResourceKind.PACKAGE, "c", {"ensure": "installed"})
    catalog.declare(ResourceKind.PACKAGE, "d", {"ensure": "installed"})
    catalog.require(b, a)
    catalog.require(c, b)
    return catalog


@pytest.fixture
def executor():
    return ConvergenceExecutor()


@pytest.fixture
def running_app(fake_host):
    fake_host.services["app"] = ServiceStatus(running=True, enabled=True)
    return fake_host


class TestConvergence:
    """Observe, apply and notify."""

    @pytest.mark.asyncio
    async def test_in_sync_resources_do_not_notify(self, executor, running_app):
        running_app.files["/etc/app.conf"] = FakeFile(b"new\n")

        result = await executor.converge(app_catalog(), running_app)

        assert result.unchanged == [CONF, SERVICE]
        assert result.changed == []
        assert running_app.mutations == []
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_notify_target_refreshed(self, executor, running_app):
        running_app.files["/etc/app.conf"] = FakeFile(b"old\n")

        result = await executor.converge(app_catalog(), running_app)

        assert result.applied == [CONF]
        assert result.refreshed == [SERVICE]
        report = result.report(SERVICE)
        assert report.refreshed
        assert report.triggered_by == [CONF]
        assert running_app.calls_for("control_service") == ["app:restart"]
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_refreshes_are_coalesced(self, executor, running_app):
        catalog = Catalog("node1")
        service = catalog.declare(ResourceKind.SERVICE, "app", {"ensure": "running"})
        for path in ("/etc/app/a.conf", "/etc/app/b.conf"):
            conf = catalog.declare(ResourceKind.FILE, path, {"ensure": "file", "content": path})
            catalog.notify(conf, service)

        result = await executor.converge(catalog, running_app)

        assert len(result.applied) == 2
        assert running_app.calls_for("control_service") == ["app:restart"]
        assert len(result.report(service.ref).triggered_by) == 2

    @pytest.mark.asyncio
    async def test_stopped_service_started_then_refreshed(self, executor, fake_host):
        result = await executor.converge(app_catalog(), fake_host)

        assert result.report(SERVICE).state == ResourceState.REFRESHED
        assert fake_host.calls_for("control_service") == ["app:start", "app:enable", "app:restart"]

    @pytest.mark.asyncio
    async def test_refresh_propagates_onward(self, executor, running_app):
        catalog = app_catalog()
        command = catalog.declare(ResourceKind.EXEC, "after-restart",
                                  {"command": "warm-cache", "refreshonly": True})
        catalog.notify(SERVICE, command)

        result = await executor.converge(catalog, running_app)

        assert result.report(command.ref).state == ResourceState.REFRESHED
        assert running_app.calls_for("run_command") == ["warm-cache"]

    @pytest.mark.asyncio
    async def test_no_refresh_without_change(self, executor, running_app):
        running_app.files["/etc/app.conf"] = FakeFile(b"new\n")
        catalog = app_catalog()
        command = catalog.declare(ResourceKind.EXEC, "after-restart",
                                  {"command": "warm-cache", "refreshonly": True})
        catalog.notify(SERVICE, command)

        result = await executor.converge(catalog, running_app)

        assert result.report(command.ref).state == ResourceState.UNCHANGED
        assert running_app.calls_for("run_command") == []

    @pytest.mark.asyncio
    async def test_catalog_frozen_by_run(self, executor, running_app):
        catalog = app_catalog()

        await executor.converge(catalog, running_app)

        assert catalog.frozen

    @pytest.mark.asyncio
    async def test_cycle_raises(self, executor, fake_host):
        catalog = chain_catalog()
        catalog.require(ResourceRef(ResourceKind.PACKAGE, "a"), ResourceRef(ResourceKind.PACKAGE, "c"))

        with pytest.raises(CycleError):
            await executor.converge(catalog, fake_host)

        assert fake_host.calls == []


class TestFailureIsolation:
    """Failures skip dependents and nothing else."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parallel", [False, True])
    async def test_dependents_skipped(self, executor, fake_host, parallel):
        fake_host.failures[("install_package", "a")] = HostError("E: Unable to locate package a")

        result = await executor.converge(chain_catalog(), fake_host, EngineOptions(parallel=parallel))

        a, b, c, d = (ResourceRef(ResourceKind.PACKAGE, t) for t in "abcd")
        assert result.failed == [a]
        assert "Unable to locate package a" in result.report(a).error
        assert set(result.skipped) == {b, c}
        assert result.report(b).blocked_by == a
        assert result.report(c).blocked_by == a
        assert result.applied == [d]
        assert result.exit_code == 1
        assert fake_host.calls_for("query_package").count("b") == 0

    @pytest.mark.asyncio
    async def test_failed_notifier_does_not_refresh(self, executor, running_app):
        running_app.failures[("write_file_atomic", "/etc/app.conf")] = HostError("disk full")

        result = await executor.converge(app_catalog(), running_app)

        assert result.failed == [CONF]
        assert result.skipped == [SERVICE]
        assert running_app.calls_for("control_service") == []

    @pytest.mark.asyncio
    async def test_observe_error(self, executor, running_app):
        running_app.files["/etc/app.conf"] = FakeFile(b"new\n")
        running_app.failures[("query_service", "app")] = HostError("systemctl missing")

        result = await executor.converge(app_catalog(), running_app)

        assert result.failed == [SERVICE]
        assert "systemctl missing" in result.report(SERVICE).error
        assert result.unchanged == [CONF]


class TestTimeouts:
    """Host operations are bounded."""

    @pytest.mark.asyncio
    async def test_observe_timeout(self, executor, fake_host):
        fake_host.delays[("query_package", "a")] = 1.0

        result = await executor.converge(chain_catalog(), fake_host, EngineOptions(timeout=0.05))

        a = ResourceRef(ResourceKind.PACKAGE, "a")
        assert result.failed == [a]
        assert "timed out" in result.report(a).error
        assert len(result.skipped) == 2

    @pytest.mark.asyncio
    async def test_refresh_timeout(self, executor, running_app):
        running_app.delays[("control_service", "app:restart")] = 1.0

        result = await executor.converge(app_catalog(), running_app, EngineOptions(timeout=0.05))

        assert result.applied == [CONF]
        assert result.failed == [SERVICE]
        assert "refresh timed out" in result.report(SERVICE).error

    @pytest.mark.asyncio
    async def test_timed_out_command_is_killed(self, executor, tmp_path):
        marker = tmp_path / "done"
        catalog = Catalog("local")
        catalog.declare(ResourceKind.EXEC, "slow", {"command": f"sleep 1.5; touch {marker}"})

        result = await executor.converge(catalog, LocalHost("local"), EngineOptions(timeout=0.3))

        slow = ResourceRef(ResourceKind.EXEC, "slow")
        assert result.failed == [slow]
        assert "apply timed out" in result.report(slow).error
        await asyncio.sleep(2)
        assert not marker.exists()


class TestDryRun:
    """Noop runs observe only."""

    @pytest.mark.asyncio
    async def test_noop_changes_nothing(self, executor, running_app):
        running_app.files["/etc/app.conf"] = FakeFile(b"old\n")

        result = await executor.converge(app_catalog(), running_app, EngineOptions(dry_run=True))

        assert result.dry_run
        assert result.noop == [CONF, SERVICE]
        assert result.report(CONF).changes[0].startswith("content ")
        assert any("would refresh" in c for c in result.report(SERVICE).changes)
        assert running_app.mutations == []
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_noop_in_sync(self, executor, running_app):
        running_app.files["/etc/app.conf"] = FakeFile(b"new\n")

        result = await executor.converge(app_catalog(), running_app, EngineOptions(dry_run=True))

        assert result.noop == []
        assert result.unchanged == [CONF, SERVICE]


class TestBuiltCatalog:
    """Converging real catalogs."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parallel", [False, True])
    async def test_second_run_changes_nothing(self, executor, fake_host, passenger_node, parallel):
        options = EngineOptions(parallel=parallel)

        first = await executor.converge(CatalogBuilder().build(passenger_node), fake_host, options)
        assert first.exit_code == 0
        assert ResourceRef(ResourceKind.SERVICE, "apache2") in first.refreshed

        fake_host.calls.clear()
        second = await executor.converge(CatalogBuilder().build(passenger_node), fake_host, options)

        assert second.exit_code == 0
        assert second.changed == []
        assert fake_host.mutations == []

    @pytest.mark.asyncio
    async def test_puppet_conf_written_once(self, executor, fake_host, master_node):
        await executor.converge(CatalogBuilder().build(master_node), fake_host)

        assert fake_host.calls_for("write_file_atomic").count("/etc/puppet/puppet.conf") == 1
        content = fake_host.files["/etc/puppet/puppet.conf"].content.decode()
        assert content.index("[main]") < content.index("[master]") < content.index("[agent]")


class TestAuditLog:
    """JSON-lines audit trail."""

    @pytest.mark.asyncio
    async def test_entries_written(self, running_app, tmp_path):
        audit = tmp_path / "audit" / "converge.jsonl"
        executor = ConvergenceExecutor()
        options = EngineOptions(audit_log_path=str(audit), user="ops", audit_context="test run")

        await executor.converge(app_catalog(), running_app, options)

        entries = [json.loads(line) for line in audit.read_text().splitlines()]
        assert [e.get("resource") for e in entries[:2]] == ["File[/etc/app.conf]", "Service[app]"]
        assert entries[0]["state"] == "applied"
        assert entries[1]["state"] == "refreshed"
        assert entries[0]["user"] == "ops"
        assert entries[-1]["operation"] == "converge"
        assert entries[-1]["exit_code"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("dry_run", [True, False])
    async def test_database_password_not_logged(self, fake_host, loader, tmp_path, dry_run):
        node = loader.parse({
            "certname": "puppet.example.com",
            "master": {
                "storeconfigs": {
                    "enabled": True,
                    "adapter": {"type": "mysql", "user": "pm", "password": "S3cretPW", "server": "db"},
                },
            },
        })
        catalog = CatalogBuilder().build(node)
        database = catalog[ResourceRef(ResourceKind.EXEC, "puppet-storeconfigs-mysql-db")]
        fake_host.command_results[database.attributes["unless"]] = 1
        fake_host.command_results[database.attributes["command"]] = 1
        audit = tmp_path / "audit.jsonl"

        result = await ConvergenceExecutor().converge(
            catalog, fake_host, EngineOptions(dry_run=dry_run, audit_log_path=str(audit)),
        )

        report = result.report(database.ref)
        assert report.state == (ResourceState.NOOP if dry_run else ResourceState.FAILED)
        assert "S3cretPW" not in audit.read_text()
        assert "S3cretPW" not in json.dumps(result.to_dict())
        assert fake_host.environments[database.attributes["unless"]]["PUPPET_STORECONFIGS_DBPASS"] == "S3cretPW"

    @pytest.mark.asyncio
    async def test_unchanged_not_logged(self, running_app, tmp_path):
        running_app.files["/etc/app.conf"] = FakeFile(b"new\n")
        audit = tmp_path / "audit.jsonl"

        await ConvergenceExecutor(audit_log_path=str(audit)).converge(app_catalog(), running_app)

        entries = [json.loads(line) for line in audit.read_text().splitlines()]
        assert len(entries) == 1
        assert entries[0]["summary"]["unchanged"] == 2
