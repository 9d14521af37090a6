"""Tests for the NodeEngine workflow."""
import pytest
import yaml

from puppet_converge.catalog import CatalogBuilder, ResourceKind, ResourceRef
from puppet_converge.converge import EngineOptions, NodeEngine
from puppet_converge.rendering import StaticRenderer
from conftest import FakeHost


@pytest.fixture
def node_file(tmp_path):
    path = tmp_path / "node.yaml"
    path.write_text(yaml.dump({
        "certname": "puppet.example.com",
        "master": {"storeconfigs": {"enabled": True}},
        "agent": {"server": "puppet.example.com"},
    }))
    return str(path)


@pytest.fixture
def engine(fake_host):
    return NodeEngine(host_factory=lambda host_id, config: fake_host)


class TestNodeEngine:
    """Tests for load, build and converge orchestration."""

    @pytest.mark.asyncio
    async def test_apply_config(self, engine, fake_host, node_file):
        result = await engine.apply_config(node_file)

        assert result.exit_code == 0
        assert result.node == "puppet.example.com"
        assert ResourceRef(ResourceKind.SERVICE, "puppetmaster") in result.refreshed
        assert "sqlite3" in fake_host.packages
        assert not fake_host.is_connected

    @pytest.mark.asyncio
    async def test_overrides_switch_to_passenger(self, engine, fake_host, node_file):
        result = await engine.apply_config(node_file, {"master.passenger.enabled": True})

        assert ResourceRef(ResourceKind.SERVICE, "apache2") in result.reports
        assert ResourceRef(ResourceKind.SERVICE, "puppetmaster") not in result.reports
        assert "puppetmaster" not in fake_host.services

    @pytest.mark.asyncio
    async def test_unsupported_adapter_exit_code(self, engine, fake_host, node_file):
        result = await engine.apply_config(node_file, {"master.storeconfigs.adapter.type": "oracle"})

        assert result.exit_code == 2
        assert "oracle" in result.error
        assert fake_host.calls == []

    @pytest.mark.asyncio
    async def test_missing_config_exit_code(self, engine, tmp_path):
        result = await engine.apply_config(str(tmp_path / "missing.yaml"))

        assert result.exit_code == 2
        assert result.reports == {}

    @pytest.mark.asyncio
    async def test_catalog_error_before_any_host_access(self, fake_host, master_node):
        master_node.master.package = "puppet"
        master_node.master.version = "2.7.9"
        master_node.agent.version = "2.7.1"
        engine = NodeEngine(host_factory=lambda host_id, config: fake_host)

        result = await engine.apply_node(master_node)

        assert result.exit_code == 2
        assert "Duplicate declaration" in result.error
        assert fake_host.calls == []

    @pytest.mark.asyncio
    async def test_template_error_exit_code(self, fake_host, master_node):
        engine = NodeEngine(
            builder=CatalogBuilder(renderer=StaticRenderer({})),
            host_factory=lambda host_id, config: fake_host,
        )

        result = await engine.apply_node(master_node)

        assert result.exit_code == 2
        assert result.catalog_error
        assert "Template not found" in result.error
        assert fake_host.calls == []

    @pytest.mark.asyncio
    async def test_host_connection_failure(self, master_node):
        class UnreachableHost(FakeHost):
            async def connect(self):
                raise ConnectionRefusedError("connection refused")

        engine = NodeEngine(host_factory=lambda host_id, config: UnreachableHost(host_id))

        result = await engine.apply_node(master_node)

        assert result.exit_code == 1
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_dry_run_then_apply(self, engine, fake_host, master_node):
        preview = await engine.apply_node(master_node, EngineOptions(dry_run=True))

        assert preview.noop
        assert fake_host.mutations == []

        applied = await engine.apply_node(master_node)
        assert set(preview.noop) <= set(applied.applied) | set(applied.refreshed)

    @pytest.mark.asyncio
    async def test_preview(self, engine, fake_host, master_node):
        summary = await engine.preview(master_node)

        assert summary.startswith("Dry run for puppet.example.com")
        assert "[?] Concat[/etc/puppet/puppet.conf]" in summary
        assert "would refresh" in summary
        assert fake_host.mutations == []

    @pytest.mark.asyncio
    async def test_preview_in_sync(self, engine, fake_host, master_node):
        await engine.apply_node(master_node)

        summary = await engine.preview(master_node)

        assert summary.startswith("No changes needed")

    def test_plan(self, master_node):
        order = NodeEngine().plan(master_node)

        titles = [str(r.ref) for r in order]
        assert titles.index("Package[puppetmaster]") < titles.index("Service[puppetmaster]")
        assert titles.index("Concat[/etc/puppet/puppet.conf]") < titles.index("Service[puppet]")
