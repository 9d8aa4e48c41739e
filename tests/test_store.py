import pytest

from console_identity.auth.models import PermissionMap
from console_identity.config.schema import DirectoryConfig
from console_identity.exceptions import AlreadyExists, GroupInUse, NotFound


def test_identity_lookup_is_case_insensitive(store):
    created = store.insert_identity("Alice", email="alice@example.com")
    assert store.get_identity("alice").id == created.id
    assert store.get_identity("ALICE").username == "Alice"
    with pytest.raises(AlreadyExists):
        store.insert_identity("alice")


def test_insert_with_unknown_group_is_atomic(store):
    with pytest.raises(NotFound):
        store.insert_identity("bob", group_ids=[999])
    assert store.get_identity("bob") is None


def test_update_identity_only_touches_given_fields(store):
    created = store.insert_identity("carol", email="carol@example.com", display_name="Carol")
    updated = store.update_identity(created.id, display_name="Carol C.")
    assert updated.display_name == "Carol C."
    assert updated.email == "carol@example.com"
    cleared = store.update_identity(created.id, email=None)
    assert cleared.email is None
    with pytest.raises(NotFound):
        store.update_identity(12345, active=False)


def test_stamp_last_login(store):
    created = store.insert_identity("dave")
    assert created.last_login is None
    store.stamp_last_login(created.id)
    assert store.get_identity("dave").last_login is not None


def test_duplicate_group_names_rejected(store):
    store.insert_group("Admins")
    with pytest.raises(AlreadyExists):
        store.insert_group("admins")


def test_group_in_use_cannot_be_deleted(store):
    group = store.insert_group("Admins")
    identity = store.insert_identity("erin", group_ids=[group.id])
    with pytest.raises(GroupInUse):
        store.delete_group(group.id)
    store.set_local_memberships(identity.id, [])
    assert store.delete_group(group.id)
    assert store.get_group(group.id) is None


def test_replace_memberships_keeps_other_class(store):
    local = store.insert_group("Local Ops")
    synced = store.insert_group(
        "Directory Ops", directory_sourced=True, directory_dn="CN=Directory Ops,DC=x"
    )
    other_synced = store.insert_group(
        "Directory NOC", directory_sourced=True, directory_dn="CN=Directory NOC,DC=x"
    )
    identity = store.insert_identity("frank", group_ids=[local.id, synced.id])

    applied = store.replace_memberships(
        identity.id, [other_synced.id, local.id], directory_sourced=True
    )

    assert applied == [other_synced.id]
    names = {group.name for group in store.groups_for_identity(identity.id)}
    assert names == {"Local Ops", "Directory NOC"}


def test_set_local_memberships_ignores_directory_groups(store):
    local_a = store.insert_group("Local A")
    local_b = store.insert_group("Local B")
    synced = store.insert_group("Synced", directory_sourced=True)
    identity = store.insert_identity("gina", group_ids=[local_a.id, synced.id])

    applied = store.set_local_memberships(identity.id, [local_b.id, synced.id])

    assert applied == [local_b.id]
    names = {group.name for group in store.groups_for_identity(identity.id)}
    assert names == {"Local B", "Synced"}


def test_replace_memberships_unknown_identity(store):
    with pytest.raises(NotFound):
        store.set_local_memberships(404, [])


def test_group_permissions_persist(store):
    group = store.insert_group(
        "Viewers", permissions=PermissionMap.from_mapping({"devices": ["view"]})
    )
    assert store.get_group_by_name("viewers").permissions.allows("devices", "view")
    updated = store.update_group(
        group.id, permissions=PermissionMap.from_mapping({"devices": ["edit"]})
    )
    assert updated.permissions.to_dict() == {"devices": ["edit"]}


def test_list_groups_by_source(store):
    store.insert_group("Local")
    store.insert_group("Synced", directory_sourced=True)
    assert [g.name for g in store.list_groups(directory_sourced=True)] == ["Synced"]
    assert [g.name for g in store.list_groups(directory_sourced=False)] == ["Local"]
    assert len(store.list_groups()) == 2


def test_directory_config_defaults_to_disabled(store):
    assert store.get_directory_config() == DirectoryConfig()


def test_seed_only_applies_to_empty_store(store, directory_config):
    assert store.seed_directory_config(directory_config)
    assert not store.seed_directory_config(DirectoryConfig(enabled=False))
    assert store.get_directory_config() == directory_config


def test_directory_config_round_trip(store, directory_config):
    store.save_directory_config(directory_config)
    assert store.get_directory_config() == directory_config
    store.save_directory_config(directory_config.model_copy(update={"page_size": 100}))
    assert store.get_directory_config().page_size == 100
