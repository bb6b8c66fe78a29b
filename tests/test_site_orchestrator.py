"""
Tests for the site lifecycle orchestrator.

Uses the in-memory runtime and provisioner from conftest with a real
SQLite-backed store.
"""

import re

import pytest
from unittest.mock import AsyncMock, patch

from demoserver.errors import (
    DemoServerError,
    GoldenImageUnavailable,
    ReadinessTimeout,
    SiteCommandError,
    SiteIdCollision,
    SiteNotFound,
    SiteProvisioningError,
)
from demoserver.models import SiteStatus
from demoserver.runtime import ContainerMount, ExecResult
from demoserver.services.site_labels import CREATED_AT_LABEL, DBNAME_LABEL, USERNAME_LABEL


def not_installed(name, command):
    if "is-installed" in command:
        return ExecResult(1, "Error: The site you have requested is not installed.")
    return ExecResult(0)


class TestCreateSite:

    @pytest.mark.asyncio
    async def test_full_provisioning(self, orchestrator, fake_runtime, fake_provisioner, store):
        site = await orchestrator.create_site("alice")

        assert re.fullmatch(r"https://[0-9a-z]{6}\.demo\.test", site.url)
        assert site.db_name == f"wp_{site.site_id}"
        assert site.db_user == f"user_{site.site_id}"
        assert site.admin_user == "admin"
        assert site.admin_pass and site.db_pass
        assert site.owner == "alice"
        assert site.ready is True
        assert site.status == SiteStatus.ALLOCATED.value

        assert site.db_name in fake_provisioner.databases
        container = fake_runtime.containers[f"wp_{site.site_id}"]
        assert container.state == "running"
        assert container.spec.image == "wp-golden:latest"
        assert container.spec.mem_limit == "1g"
        assert container.spec.environment["WORDPRESS_DB_NAME"] == site.db_name
        assert container.spec.environment["WP_SITE_URL"] == site.url
        assert container.labels[USERNAME_LABEL] == "alice"
        assert container.labels[f"traefik.http.routers.{site.site_id}.rule"] == f"Host(`{site.site_id}.demo.test`)"

        row, pooled = await store.get(site.site_id)
        assert pooled is False
        assert row.status == SiteStatus.ALLOCATED.value
        assert row.containerid == site.container_id

    @pytest.mark.asyncio
    async def test_post_ready_commands(self, orchestrator, fake_runtime):
        site = await orchestrator.create_site()

        commands = fake_runtime.commands_for(f"wp_{site.site_id}")
        assert any(f"option update home {site.url}" in c for c in commands)
        assert any(f"option update siteurl {site.url}" in c for c in commands)
        assert any(f"--user_pass={site.admin_pass}" in c for c in commands)

    @pytest.mark.asyncio
    async def test_two_sites_are_distinct(self, orchestrator):
        first = await orchestrator.create_site()
        second = await orchestrator.create_site()

        assert first.site_id != second.site_id
        assert first.db_name != second.db_name

    @pytest.mark.asyncio
    async def test_pooled_site_is_ready_row(self, orchestrator, store):
        site = await orchestrator.create_site(pooled=True)

        row, pooled = await store.get(site.site_id)
        assert pooled is True
        assert row.status == SiteStatus.READY.value

    @pytest.mark.asyncio
    async def test_golden_sql_import(self, orchestrator, fake_provisioner, settings, monkeypatch):
        monkeypatch.setattr(settings, "golden_sql_path", "/backups/golden.sql")

        site = await orchestrator.create_site()

        assert fake_provisioner.imports == [(site.db_name, "/backups/golden.sql")]
        assert fake_provisioner.clones == []

    @pytest.mark.asyncio
    async def test_golden_database_copied_by_default(self, orchestrator, fake_provisioner, settings):
        site = await orchestrator.create_site()

        assert fake_provisioner.clones == [(settings.golden_db_name, site.db_name)]
        assert fake_provisioner.imports == []

    @pytest.mark.asyncio
    async def test_golden_copy_failure_rolls_back(self, orchestrator, fake_runtime, fake_provisioner, store):
        fake_provisioner.clone_database = AsyncMock(side_effect=DemoServerError("mysqldump: Got error: 1049"))

        with pytest.raises(DemoServerError):
            await orchestrator.create_site()

        assert fake_provisioner.databases == set()
        assert fake_provisioner.dropped
        assert fake_runtime.containers == {}
        assert await store.list_sites() == []

    @pytest.mark.asyncio
    async def test_login_url_from_token_file(self, orchestrator, fake_runtime):
        def with_token(name, command):
            if command.startswith("cat "):
                return ExecResult(0, "tok123\n")
            return ExecResult(0)
        fake_runtime.exec_handler = with_token

        site = await orchestrator.create_site()

        assert site.login_url == f"{site.url}/?auto_login_token=tok123"


class TestCreateSiteFailures:

    @pytest.mark.asyncio
    async def test_collision_retries_with_new_id(self, orchestrator, fake_provisioner):
        fake_provisioner.databases.add("wp_aaaaaa")

        with patch(
            "demoserver.services.site_orchestrator.generate_site_id",
            side_effect=["aaaaaa", "bbbbbb"],
        ):
            site = await orchestrator.create_site()

        assert site.site_id == "bbbbbb"
        # The colliding database belongs to someone else and must survive
        assert "wp_aaaaaa" in fake_provisioner.databases
        assert "wp_aaaaaa" not in fake_provisioner.dropped

    @pytest.mark.asyncio
    async def test_collision_exhaustion(self, orchestrator, fake_provisioner, store):
        fake_provisioner.databases.add("wp_aaaaaa")

        with patch("demoserver.services.site_orchestrator.generate_site_id", return_value="aaaaaa"):
            with pytest.raises(SiteIdCollision):
                await orchestrator.create_site()

        assert await store.list_sites() == []

    @pytest.mark.asyncio
    async def test_command_failure_is_fatal_and_rolls_back(self, orchestrator, fake_runtime, fake_provisioner, store):
        def failing(name, command):
            if "option update home" in command:
                return ExecResult(1, "Error: Could not update option 'home'.")
            return ExecResult(0)
        fake_runtime.exec_handler = failing

        with patch("demoserver.services.site_orchestrator.generate_site_id", return_value="fail01"):
            with pytest.raises(SiteCommandError) as exc_info:
                await orchestrator.create_site()

        error = exc_info.value
        assert error.exit_code == 1
        assert "Could not update option 'home'" in str(error)
        assert error.site_id == "fail01"
        assert error.stage is not None

        # Nothing usable-looking remains
        assert "wp_fail01" not in fake_runtime.containers
        assert "wp_fail01" in fake_provisioner.dropped
        row, _ = await store.get("fail01")
        assert row is None

    @pytest.mark.asyncio
    async def test_container_create_failure_rolls_back(self, orchestrator, fake_runtime, fake_provisioner, store):
        fake_runtime.create_container = AsyncMock(side_effect=RuntimeError("out of memory"))

        with patch("demoserver.services.site_orchestrator.generate_site_id", return_value="oom001"):
            with pytest.raises(SiteProvisioningError) as exc_info:
                await orchestrator.create_site()

        assert exc_info.value.stage == "db_provisioned"
        assert "wp_oom001" in fake_provisioner.dropped
        row, _ = await store.get("oom001")
        assert row is None

    @pytest.mark.asyncio
    async def test_readiness_timeout_optimistic(self, orchestrator, fake_runtime, store):
        fake_runtime.exec_handler = not_installed

        site = await orchestrator.create_site()

        assert site.ready is False
        assert site.warning
        assert site.url and site.db_pass and site.admin_pass
        # Configuration commands are skipped when the app never came up
        assert not any("option update" in c for c in fake_runtime.commands_for(f"wp_{site.site_id}"))
        row, _ = await store.get(site.site_id)
        assert row.status == SiteStatus.ALLOCATED.value

    @pytest.mark.asyncio
    async def test_readiness_timeout_rollback_policy(self, orchestrator, fake_runtime, fake_provisioner, store,
                                                     settings, monkeypatch):
        monkeypatch.setattr(settings, "readiness_timeout_policy", "rollback")
        fake_runtime.exec_handler = not_installed

        with patch("demoserver.services.site_orchestrator.generate_site_id", return_value="slow01"):
            with pytest.raises(ReadinessTimeout):
                await orchestrator.create_site()

        assert "wp_slow01" not in fake_runtime.containers
        assert "wp_slow01" in fake_provisioner.dropped
        row, _ = await store.get("slow01")
        assert row is None

    @pytest.mark.asyncio
    async def test_missing_golden_image(self, orchestrator, fake_runtime, fake_provisioner, settings):
        fake_runtime.images.discard(settings.golden_image)
        orchestrator.golden.start_background_build = AsyncMock(return_value=None)

        with pytest.raises(GoldenImageUnavailable):
            await orchestrator.create_site()

        orchestrator.golden.start_background_build.assert_awaited_once()
        assert fake_provisioner.databases == set()
        assert fake_runtime.containers == {}


class TestListSites:

    @pytest.mark.asyncio
    async def test_store_listing_newest_first(self, orchestrator, age):
        old = await orchestrator.create_site("old")
        new = await orchestrator.create_site("new")
        await age(old.site_id, 5)

        sites = await orchestrator.list_sites()

        assert [s.site_id for s in sites] == [new.site_id, old.site_id]

    @pytest.mark.asyncio
    async def test_expired_status_is_computed(self, orchestrator, age):
        site = await orchestrator.create_site()
        await age(site.site_id, 61)

        sites = await orchestrator.list_sites()

        assert sites[0].status == SiteStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_runtime_listing_from_labels(self, orchestrator, age):
        old = await orchestrator.create_site("bob")
        new = await orchestrator.create_site("carol")
        await age(old.site_id, 5)

        sites = await orchestrator.list_sites(source="runtime")

        assert [s.site_id for s in sites] == [new.site_id, old.site_id]
        assert sites[1].owner == "bob"
        assert sites[1].url == old.url
        assert sites[1].db_name == old.db_name
        # Labels never carry credentials
        assert sites[1].admin_pass is None

    @pytest.mark.asyncio
    async def test_listing_does_not_mutate(self, orchestrator, fake_runtime, fake_provisioner):
        await orchestrator.create_site()
        containers_before = set(fake_runtime.containers)
        dbs_before = set(fake_provisioner.databases)

        await orchestrator.list_sites()
        await orchestrator.list_sites(source="runtime")

        assert set(fake_runtime.containers) == containers_before
        assert fake_provisioner.databases == dbs_before


class TestTeardown:

    @pytest.mark.asyncio
    async def test_destroy_site(self, orchestrator, fake_runtime, fake_provisioner, store):
        site = await orchestrator.create_site()
        container = fake_runtime.containers[f"wp_{site.site_id}"]
        container.mounts.append(ContainerMount(type="volume", name="wpdata_x", destination="/var/www/html"))
        fake_runtime.volumes.add("wpdata_x")

        assert await orchestrator.destroy_site(site.site_id) is True

        assert f"wp_{site.site_id}" not in fake_runtime.containers
        assert "wpdata_x" not in fake_runtime.volumes
        assert site.db_name not in fake_provisioner.databases
        row, _ = await store.get(site.site_id)
        assert row is None

    @pytest.mark.asyncio
    async def test_destroy_unknown_site(self, orchestrator):
        with pytest.raises(SiteNotFound):
            await orchestrator.destroy_site("nosuch")

    @pytest.mark.asyncio
    async def test_teardown_twice_is_safe(self, orchestrator):
        site = await orchestrator.create_site()

        await orchestrator.teardown(site.site_id)
        await orchestrator.teardown(site.site_id)


class TestReconcile:

    @pytest.mark.asyncio
    async def test_reports_both_directions(self, orchestrator, fake_runtime):
        kept = await orchestrator.create_site()
        lost = await orchestrator.create_site()
        del fake_runtime.containers[f"wp_{lost.site_id}"]

        stray = await orchestrator.create_site()
        await orchestrator.store.delete(stray.site_id)

        report = await orchestrator.reconcile()

        assert report.rows_without_container == [lost.site_id]
        assert report.containers_without_row == [f"wp_{stray.site_id}"]
        assert report.pruned == []
        assert f"wp_{kept.site_id}" in fake_runtime.containers

    @pytest.mark.asyncio
    async def test_prune_removes_dead_rows(self, orchestrator, fake_runtime, fake_provisioner, store):
        lost = await orchestrator.create_site()
        del fake_runtime.containers[f"wp_{lost.site_id}"]

        report = await orchestrator.reconcile(prune=True)

        assert report.pruned == [lost.site_id]
        row, _ = await store.get(lost.site_id)
        assert row is None
        assert lost.db_name in fake_provisioner.dropped

    @pytest.mark.asyncio
    async def test_provisioning_rows_are_left_alone(self, orchestrator, store):
        await store.insert(
            pooled=False, site_id="busy01", siteurl="https://busy01.demo.test", user="admin",
            password="pw", email=None, owner=None, db_name="wp_busy01", db_user="user_busy01", db_pass="pw",
        )

        report = await orchestrator.reconcile(prune=True)

        assert "busy01" not in report.rows_without_container
        row, _ = await store.get("busy01")
        assert row is not None

    @pytest.mark.asyncio
    async def test_abandoned_provisioning_rows_are_pruned(self, orchestrator, store, fake_provisioner, age):
        await store.insert(
            pooled=False, site_id="crash1", siteurl="https://crash1.demo.test", user="admin",
            password="pw", email=None, owner=None, db_name="wp_crash1", db_user="user_crash1", db_pass="pw",
        )
        await age("crash1", 60 * 24 * 7)

        report = await orchestrator.reconcile()

        assert report.abandoned == ["crash1"]
        assert report.pruned == []
        row, _ = await store.get("crash1")
        assert row is not None

        report = await orchestrator.reconcile(prune=True)

        assert report.pruned == ["crash1"]
        row, _ = await store.get("crash1")
        assert row is None
        assert "wp_crash1" in fake_provisioner.dropped
