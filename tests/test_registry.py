import pytest

from hub import BackendRegistry, BackendRole, HealthStatus, InvalidAddress, Signal, StateStore
from hub.state import CUSTOM_SERVERS_KEY

from conftest import CLOUD, CUSTOM_A, CUSTOM_B, LOCAL


@pytest.fixture
def registry(store, events):
    return BackendRegistry(CLOUD, LOCAL, store=store, events=events)


def active_changes(recorder):
    return [payload for signal, payload in recorder if signal is Signal.ACTIVE_SET_CHANGED]


class TestMembership:
    def test_fixed_backends_come_first(self, registry):
        roles = [b.role for b in registry.get_all()]
        assert roles == [BackendRole.CLOUD, BackendRole.LOCAL]
        assert registry.get(CLOUD).enabled is False
        assert registry.get(LOCAL).enabled is True

    def test_add_twice_is_add_once(self, registry):
        assert registry.add(CUSTOM_A) is True
        assert registry.add(CUSTOM_A) is False
        assert registry.add(CUSTOM_A + "/") is False
        assert [b.address for b in registry.custom()] == [CUSTOM_A]

    def test_add_rejects_non_http_address(self, registry):
        with pytest.raises(InvalidAddress):
            registry.add("ftp://example.com")
        with pytest.raises(InvalidAddress):
            registry.add("   ")

    def test_new_backend_is_not_active_until_online(self, registry):
        registry.add(CUSTOM_A)
        assert registry.get(CUSTOM_A).health is HealthStatus.UNCHECKED
        assert not registry.is_active(CUSTOM_A)

        registry.set_health(CUSTOM_A, HealthStatus.ONLINE)
        assert registry.is_active(CUSTOM_A)

        registry.set_health(CUSTOM_A, HealthStatus.OFFLINE, "Could not connect to server")
        assert not registry.is_active(CUSTOM_A)
        assert registry.get(CUSTOM_A).detail == "Could not connect to server"

    def test_remove_retracts_from_active_set(self, registry, recorder):
        registry.add(CUSTOM_A)
        registry.set_health(CUSTOM_A, HealthStatus.ONLINE)
        assert registry.remove(CUSTOM_A) is True

        assert CUSTOM_A not in registry
        assert not registry.is_active(CUSTOM_A)
        assert active_changes(recorder) == [[CUSTOM_A], []]

    def test_remove_never_active_backend(self, registry, recorder):
        registry.add(CUSTOM_A)
        assert registry.remove(CUSTOM_A) is True
        assert CUSTOM_A not in registry
        assert active_changes(recorder) == []

    def test_remove_unknown_returns_false(self, registry):
        assert registry.remove(CUSTOM_B) is False

    def test_fixed_backends_cannot_be_removed(self, registry):
        with pytest.raises(ValueError):
            registry.remove(LOCAL)
        with pytest.raises(ValueError):
            registry.remove(CLOUD)

    def test_toggle_rederives_membership(self, registry):
        registry.add(CUSTOM_A)
        registry.set_health(CUSTOM_A, HealthStatus.ONLINE)

        assert registry.toggle(CUSTOM_A) is False
        assert not registry.is_active(CUSTOM_A)
        assert registry.toggle(CUSTOM_A) is True
        assert registry.is_active(CUSTOM_A)
        assert registry.toggle("http://nowhere.test") is None

    def test_cloud_requires_enabled_and_authenticated(self, registry):
        registry.set_enabled(CLOUD, True)
        assert not registry.is_active(CLOUD)

        registry.set_authenticated(True)
        assert registry.is_active(CLOUD)

        registry.set_enabled(CLOUD, False)
        assert not registry.is_active(CLOUD)

    def test_active_addresses_follow_registration_order(self, registry):
        registry.add(CUSTOM_A)
        registry.add(CUSTOM_B)
        registry.set_health(CUSTOM_B, HealthStatus.ONLINE)
        registry.set_health(CUSTOM_A, HealthStatus.ONLINE)
        registry.set_health(LOCAL, HealthStatus.ONLINE)
        registry.set_enabled(CLOUD, True)
        registry.set_authenticated(True)

        assert registry.active_addresses() == [CLOUD, LOCAL, CUSTOM_A, CUSTOM_B]

    def test_health_change_is_signalled_once(self, registry, recorder):
        registry.add(CUSTOM_A)
        registry.set_health(CUSTOM_A, HealthStatus.ONLINE)
        registry.set_health(CUSTOM_A, HealthStatus.ONLINE)

        health = [p for s, p in recorder if s is Signal.HEALTH_CHANGED]
        assert health == [{"address": CUSTOM_A, "status": "online"}]

    def test_get_all_returns_copies(self, registry):
        registry.add(CUSTOM_A)
        registry.get_all()[-1].enabled = False
        assert registry.get(CUSTOM_A).enabled is True

    def test_lookups_ignore_trailing_slash_and_whitespace(self, registry):
        registry.add(CUSTOM_A, "sk-a")
        spelled = f"  {CUSTOM_A}/ "

        assert registry.get(spelled).address == CUSTOM_A
        assert spelled in registry
        assert registry.set_health(spelled, HealthStatus.ONLINE) is True
        assert registry.is_active(CUSTOM_A)
        assert registry.set_credential(spelled, "sk-b") is True
        assert registry.credential_for(spelled) == "sk-b"
        assert registry.toggle(spelled) is False
        assert not registry.is_active(CUSTOM_A)
        assert registry.remove(spelled) is True
        assert CUSTOM_A not in registry


class TestCredentials:
    def test_set_and_clear_credential(self, registry):
        registry.add(CUSTOM_A, "sk-first")
        assert registry.credential_for(CUSTOM_A) == "sk-first"

        registry.set_credential(CUSTOM_A, "sk-second")
        assert registry.credential_for(CUSTOM_A) == "sk-second"

        registry.set_credential(CUSTOM_A, "")
        assert registry.credential_for(CUSTOM_A) is None

    def test_masked_credential(self, registry):
        registry.add(CUSTOM_A, "sk-1234567890abcdef")
        assert registry.get(CUSTOM_A).masked_credential == "sk-12345...cdef"


class TestPersistence:
    def test_round_trip_through_state_file(self, tmp_path):
        path = tmp_path / "state.json"
        registry = BackendRegistry(CLOUD, LOCAL, store=StateStore(path))
        registry.add(CUSTOM_A, "sk-secret")
        registry.add(CUSTOM_B)
        registry.set_health(CUSTOM_B, HealthStatus.ONLINE)
        registry.toggle(CUSTOM_B)

        reloaded = BackendRegistry(CLOUD, LOCAL, store=StateStore(path))
        assert reloaded.load() == 2

        custom = reloaded.custom()
        assert [b.address for b in custom] == [CUSTOM_A, CUSTOM_B]
        assert custom[0].credential == "sk-secret"
        assert custom[1].enabled is False
        assert all(b.health is HealthStatus.UNCHECKED for b in custom)
        assert reloaded.active_addresses() == []

    def test_record_shape(self, registry, store):
        registry.add(CUSTOM_A, "sk-secret")
        registry.add(CUSTOM_B)
        assert store.get(CUSTOM_SERVERS_KEY) == [
            {"address": CUSTOM_A, "enabled": True, "status": "unchecked", "apiKey": "sk-secret"},
            {"address": CUSTOM_B, "enabled": True, "status": "unchecked"},
        ]

    def test_load_drops_duplicates_and_invalid_records(self, store, events):
        store.set(CUSTOM_SERVERS_KEY, [
            {"address": CUSTOM_A, "enabled": True, "status": "online", "apiKey": "first"},
            {"address": CUSTOM_A + "/", "enabled": False, "status": "offline", "apiKey": "second"},
            {"enabled": True},
            {"address": "not-a-url"},
        ])
        registry = BackendRegistry(CLOUD, LOCAL, store=store, events=events)

        assert registry.load() == 1
        backend = registry.get(CUSTOM_A)
        assert backend.credential == "first"
        assert backend.enabled is True
        assert len(store.get(CUSTOM_SERVERS_KEY)) == 1

    def test_load_ignores_non_list_blob(self, store):
        store.set(CUSTOM_SERVERS_KEY, {"address": CUSTOM_A})
        registry = BackendRegistry(CLOUD, LOCAL, store=store)
        assert registry.load() == 0


class TestAggregateHealth:
    def test_offline_when_nothing_reachable_and_no_custom(self, registry):
        assert registry.aggregate_health() is HealthStatus.OFFLINE

    def test_unchecked_while_custom_backends_pending(self, registry):
        registry.add(CUSTOM_A)
        assert registry.aggregate_health() is HealthStatus.UNCHECKED

    def test_offline_once_custom_backends_checked(self, registry):
        registry.add(CUSTOM_A)
        registry.set_health(CUSTOM_A, HealthStatus.OFFLINE)
        assert registry.aggregate_health() is HealthStatus.OFFLINE

    def test_online_when_any_backend_is(self, registry):
        registry.add(CUSTOM_A)
        registry.set_health(LOCAL, HealthStatus.ONLINE)
        assert registry.aggregate_health() is HealthStatus.ONLINE

    def test_online_with_authenticated_cloud(self, registry):
        registry.set_enabled(CLOUD, True)
        registry.set_authenticated(True)
        assert registry.aggregate_health() is HealthStatus.ONLINE

    def test_disabled_online_custom_does_not_count(self, registry):
        registry.add(CUSTOM_A)
        registry.set_health(CUSTOM_A, HealthStatus.ONLINE)
        registry.toggle(CUSTOM_A)
        assert registry.aggregate_health() is HealthStatus.OFFLINE
