# test_permission_service.py - Facade behaviour: conditional fetch, triggers and mutations

import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import FailingCacheStore, make_actor
from models.permissions import Role
from services.audit import ActivityLogger
from services.cache_coordinator import check_key, permission_key, role_simplified_key, user_key, user_list_key
from services.permission_service import PermissionService
from utils.exceptions import InvalidInputError, NotFoundError


class TestConditionalRoleFetch:
    """Clients send their last-known version and get either the set or "unchanged" """

    @pytest.mark.asyncio
    async def test_first_fetch_returns_set_and_version(self, service, reseller):
        result = await service.get_my_role_permissions(reseller, 0)
        assert result.role == Role.RESELLER
        assert result.version == 1
        assert result.unchanged is False
        assert result.permissions == ["invoices.view"]

    @pytest.mark.asyncio
    async def test_matching_version_is_unchanged(self, service, reseller):
        result = await service.get_my_role_permissions(reseller, 1)
        assert result.unchanged is True
        assert result.version == 1
        assert result.permissions is None

    @pytest.mark.asyncio
    async def test_stale_version_gets_new_set(self, service, store, reseller):
        await service.assign_permissions_to_role("reseller", [store.id_for("invoices.create")])

        result = await service.get_my_role_permissions(reseller, 1)
        assert result.unchanged is False
        assert result.version == 2
        assert result.permissions == ["invoices.create", "invoices.view"]

    @pytest.mark.asyncio
    async def test_systemadmin_always_gets_catalog_with_version_zero(self, service, store, sysadmin):
        result = await service.get_my_role_permissions(sysadmin, 5)
        assert result.version == 0
        assert result.is_system_admin is True
        assert result.permissions == sorted(p["name"] for p in store.permissions.values())

    @pytest.mark.asyncio
    async def test_admin_role_gets_full_catalog(self, service, store, admin):
        result = await service.get_my_role_permissions(admin, 0)
        assert result.role == Role.ADMIN
        assert result.version == 1
        assert len(result.permissions) == len(store.permissions)

    @pytest.mark.asyncio
    async def test_primary_role_priority(self, service):
        actor = make_actor(user_id="multi-1", roles=("consumer", "reseller"))
        result = await service.get_my_role_permissions(actor, 0)
        assert result.role == Role.RESELLER

    @pytest.mark.asyncio
    async def test_multi_role_actor_gets_primary_role_grants_only(self, service):
        actor = make_actor(user_id="multi-1", roles=("consumer", "reseller"))
        result = await service.get_my_role_permissions(actor, 0)
        assert result.permissions == ["invoices.view"]
        # lower-role grants still hold for checks
        assert await service.check(actor, "products.view") is True

    @pytest.mark.asyncio
    async def test_no_role_falls_back_to_viewer(self, service):
        actor = make_actor(user_id="norole-1", roles=None)
        result = await service.get_my_role_permissions(actor, 0)
        assert result.role == Role.VIEWER
        assert result.permissions == []

    @pytest.mark.asyncio
    async def test_ledger_unavailable_returns_full_set_with_version_zero(self, store, reseller):
        service = PermissionService(store, FailingCacheStore())
        result = await service.get_my_role_permissions(reseller, 1)
        assert result.unchanged is False
        assert result.version == 0
        assert result.permissions == ["invoices.view"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("version", [-1, "1", 1.5, True])
    async def test_invalid_client_version(self, service, reseller, version):
        with pytest.raises(InvalidInputError):
            await service.get_my_role_permissions(reseller, version)

    @pytest.mark.asyncio
    async def test_role_versions(self, service, store):
        await service.assign_permissions_to_role("support", [store.id_for("products.view")])
        versions = await service.get_role_versions()
        assert versions["support"] == 2
        assert versions["consumer"] == 1
        assert set(versions) == {r.value for r in Role}

    @pytest.mark.asyncio
    async def test_role_versions_degrade_to_zero(self, store):
        service = PermissionService(store, FailingCacheStore())
        versions = await service.get_role_versions()
        assert set(versions.values()) == {0}


class TestInvalidationTriggers:

    @pytest.mark.asyncio
    async def test_role_change_invalidates_then_bumps(self, service, cache, reseller):
        await service.check(reseller, "invoices.view")
        version = await service.on_role_permissions_changed("reseller")
        assert version == 2
        assert await cache.get(check_key(reseller, "invoices.view")) is None

    @pytest.mark.asyncio
    async def test_role_change_survives_broken_ledger(self, store):
        service = PermissionService(store, FailingCacheStore())
        assert await service.on_role_permissions_changed(Role.CONSUMER) is None

    @pytest.mark.asyncio
    async def test_system_admin_flag_change_does_not_bump(self, service):
        await service.on_system_admin_flag_changed("reseller-1")
        versions = await service.get_role_versions()
        assert set(versions.values()) == {1}

    @pytest.mark.asyncio
    async def test_user_change_drops_user_entries(self, service, cache, reseller):
        await service.get_user_permissions("reseller-1")
        await service.check(reseller, "invoices.view")
        await service.on_user_permissions_changed("reseller-1")
        assert await cache.get(user_key("reseller-1")) is None
        assert await cache.get(check_key(reseller, "invoices.view")) is None


class TestCoherence:
    """Mutations are visible to the next check without waiting for TTL expiry"""

    @pytest.mark.asyncio
    async def test_role_grant_visible_immediately(self, service, store, reseller):
        assert await service.check(reseller, "invoices.delete") is False
        await service.assign_permissions_to_role("reseller", [store.id_for("invoices.delete")])
        assert await service.check(reseller, "invoices.delete") is True

    @pytest.mark.asyncio
    async def test_role_revoke_visible_immediately(self, service, store, reseller):
        assert await service.check(reseller, "invoices.view") is True
        await service.remove_permissions_from_role("reseller", [store.id_for("invoices.view")])
        assert await service.check(reseller, "invoices.view") is False

    @pytest.mark.asyncio
    async def test_role_change_reaches_multi_role_holders(self, service, store):
        actor = make_actor(user_id="multi-1", roles=("consumer", "reseller"))
        assert await service.check(actor, "users.create") is False
        await service.assign_permissions_to_role("consumer", [store.id_for("users.create")])
        assert await service.check(actor, "users.create") is True

    @pytest.mark.asyncio
    async def test_user_override_visible_immediately(self, service, store, reseller):
        assert await service.check(reseller, "invoices.view") is True
        await service.assign_permissions_to_user("reseller-1", [store.id_for("invoices.view")], granted=False)
        assert await service.check(reseller, "invoices.view") is False

    @pytest.mark.asyncio
    async def test_role_names_cache_refreshed(self, service, store, cache):
        assert await service.get_role_permission_names("reseller") == ["invoices.view"]
        await service.assign_permissions_to_role("reseller", [store.id_for("invoices.create")])
        assert await cache.get(role_simplified_key(Role.RESELLER)) is None
        assert await service.get_role_permission_names("reseller") == ["invoices.create", "invoices.view"]

    @pytest.mark.asyncio
    async def test_failing_cache_checks_stay_correct(self, store, reseller):
        service = PermissionService(store, FailingCacheStore())
        assert await service.check(reseller, "invoices.view") is True
        assert await service.check(reseller, "invoices.delete") is False
        assert await service.check_bulk(reseller, ["invoices.view", "users.view"]) == {
            "invoices.view": True,
            "users.view": False,
        }


class TestMutations:

    @pytest.mark.asyncio
    async def test_user_assign_is_idempotent(self, service, store):
        ids = [store.id_for("users.view"), store.id_for("products.view")]
        await service.assign_permissions_to_user("consumer-1", ids)
        once = dict(store.user_rows["consumer-1"])
        await service.assign_permissions_to_user("consumer-1", ids)
        assert store.user_rows["consumer-1"] == once

    @pytest.mark.asyncio
    async def test_user_assign_replaces_previous_set(self, service, store):
        await service.assign_permissions_to_user("consumer-1", [store.id_for("users.view")])
        await service.assign_permissions_to_user("consumer-1", [store.id_for("invoices.view")])
        assert set(store.user_rows["consumer-1"]) == {store.id_for("invoices.view")}

    @pytest.mark.asyncio
    async def test_role_assign_is_upsert(self, service, store):
        pid = store.id_for("invoices.view")
        await service.assign_permissions_to_role("reseller", [pid])
        assert sum(1 for row in store.role_rows if row == ("reseller", pid)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ids", [[], None, [""], [123], "abc"])
    async def test_malformed_permission_ids(self, service, ids):
        with pytest.raises(InvalidInputError):
            await service.assign_permissions_to_role("reseller", ids)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id", ["u[1]", "u*", "reseller-?", "a:b", "back\\slash", "u1\n", " ", ""])
    async def test_malformed_user_ids_rejected(self, service, store, user_id):
        with pytest.raises(InvalidInputError):
            await service.assign_permissions_to_user(user_id, [store.id_for("invoices.view")], granted=False)
        assert store.user_rows == {}

    @pytest.mark.asyncio
    async def test_unknown_permission_ids(self, service):
        with pytest.raises(NotFoundError):
            await service.assign_permissions_to_role("reseller", ["ffffffffffffffffffffffff"])

    @pytest.mark.asyncio
    async def test_unknown_role(self, service, store):
        with pytest.raises(InvalidInputError):
            await service.assign_permissions_to_role("superuser", [store.id_for("users.view")])

    @pytest.mark.asyncio
    async def test_set_system_admin(self, service, store):
        await service.set_system_admin("reseller-1", True, actor_id="sys-1")
        assert store.profiles["reseller-1"]["is_systemadmin"] is True

    @pytest.mark.asyncio
    async def test_set_system_admin_unknown_user(self, service):
        with pytest.raises(NotFoundError):
            await service.set_system_admin("nobody", True)

    @pytest.mark.asyncio
    async def test_set_system_admin_requires_bool(self, service):
        with pytest.raises(InvalidInputError):
            await service.set_system_admin("reseller-1", "yes")

    @pytest.mark.asyncio
    async def test_activity_event_emitted(self, store, cache):
        db = MagicMock()
        db.activity_logs.insert_one = AsyncMock()
        activity = ActivityLogger(db)
        service = PermissionService(store, cache, activity=activity)

        await service.assign_permissions_to_role("support", [store.id_for("products.view")], actor_id="sys-1")
        await activity.drain()

        db.activity_logs.insert_one.assert_awaited_once()
        entry = db.activity_logs.insert_one.call_args[0][0]
        assert entry["action"] == "assign_permissions_to_role"
        assert entry["actor_id"] == "sys-1"
        assert entry["resource_id"] == "support"

    @pytest.mark.asyncio
    async def test_activity_failure_does_not_fail_mutation(self, store, cache):
        db = MagicMock()
        db.activity_logs.insert_one = AsyncMock(side_effect=RuntimeError("db down"))
        activity = ActivityLogger(db)
        service = PermissionService(store, cache, activity=activity)

        assert await service.remove_permissions_from_user("reseller-1", [store.id_for("users.view")]) == 0
        await activity.drain()


class TestLookups:

    @pytest.mark.asyncio
    async def test_check_user_permission(self, service):
        assert await service.check_user_permission("reseller-1", "invoices.view") is True
        assert await service.check_user_permission("consumer-1", "invoices.view") is False

    @pytest.mark.asyncio
    async def test_check_user_permission_unknown_user(self, service):
        with pytest.raises(NotFoundError):
            await service.check_user_permission("nobody", "invoices.view")

    @pytest.mark.asyncio
    async def test_list_permissions_paged_and_cached(self, service, store):
        page = await service.list_permissions(page=1, limit=3)
        assert page.count == len(store.permissions)
        assert len(page.items) == 3

        store.permissions.clear()
        cached = await service.list_permissions(page=1, limit=3)
        assert [p.name for p in cached.items] == [p.name for p in page.items]

    @pytest.mark.asyncio
    async def test_list_permissions_filters(self, service):
        page = await service.list_permissions(resource="invoices")
        assert {p.name for p in page.items} == {"invoices.view", "invoices.create", "invoices.delete"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (1, 101)])
    async def test_list_permissions_bounds(self, service, page, limit):
        with pytest.raises(InvalidInputError):
            await service.list_permissions(page=page, limit=limit)

    @pytest.mark.asyncio
    async def test_role_permissions_are_explicit_rows(self, service):
        # catalog browsing shows stored rows only; admin has none in the fixture data
        assert await service.get_role_permissions("admin") == []
        rows = await service.get_role_permissions("support")
        assert [p.name for p in rows] == ["invoices.view", "users.view"]

    @pytest.mark.asyncio
    async def test_user_permissions_include_overrides(self, service, store):
        store.user_rows["reseller-1"] = {store.id_for("users.create"): True}
        result = await service.get_user_permissions("reseller-1")
        assert result == [
            {"name": "invoices.view", "granted": True},
            {"name": "users.create", "granted": True},
        ]

    @pytest.mark.asyncio
    async def test_check_user_permissions_bulk(self, service, store):
        result = await service.check_user_permissions_bulk("consumer-1", ["products.view", "invoices.view"])
        assert result == {"products.view": True, "invoices.view": False}
        assert ("consumer-1", "products.view") in store.has_permission_calls

    @pytest.mark.asyncio
    async def test_check_user_permissions_bulk_unknown_user(self, service):
        with pytest.raises(NotFoundError):
            await service.check_user_permissions_bulk("nobody", ["products.view"])


class TestPermissionById:

    @pytest.mark.asyncio
    async def test_found_and_cached(self, service, store, cache):
        pid = store.id_for("users.view")
        permission = await service.get_permission(pid)
        assert permission.name == "users.view"
        assert (await cache.get(permission_key(pid)))["name"] == "users.view"

        store.permissions.clear()
        assert (await service.get_permission(pid)).name == "users.view"

    @pytest.mark.asyncio
    async def test_unknown_id(self, service, cache):
        with pytest.raises(NotFoundError):
            await service.get_permission("f" * 24)
        assert await cache.get(permission_key("f" * 24)) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("permission_id", ["", "   ", None, 7])
    async def test_invalid_id(self, service, permission_id):
        with pytest.raises(InvalidInputError):
            await service.get_permission(permission_id)


class TestUserListing:

    @pytest.mark.asyncio
    async def test_lists_everyone_without_search(self, service, store):
        rows = await service.list_users()
        assert len(rows) == len(store.profiles)
        assert {"user_id", "email", "full_name", "role", "is_systemadmin"} <= set(rows[0])

    @pytest.mark.asyncio
    async def test_search_filters(self, service):
        rows = await service.list_users("  reseller ")
        assert [r["user_id"] for r in rows] == ["reseller-1"]

    @pytest.mark.asyncio
    async def test_short_search_lists_everyone(self, service, store):
        assert len(await service.list_users("r")) == len(store.profiles)

    @pytest.mark.asyncio
    async def test_cached_until_user_change(self, service, store, cache):
        await service.list_users()
        await service.list_users()
        assert store.list_users_calls == 1
        assert await cache.get(user_list_key(None)) is not None

        await service.set_system_admin("reseller-1", True)
        assert await cache.get(user_list_key(None)) is None

        rows = await service.list_users()
        assert store.list_users_calls == 2
        assert next(r for r in rows if r["user_id"] == "reseller-1")["is_systemadmin"] is True

    @pytest.mark.asyncio
    async def test_role_change_drops_cached_lists(self, service, store, cache):
        await service.list_users("consumer")
        await service.assign_permissions_to_role("consumer", [store.id_for("users.create")])
        assert await cache.get(user_list_key("consumer")) is None
