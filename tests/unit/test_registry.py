"""Tests for the SQLite resource registry."""

from datetime import datetime, timedelta, UTC

import pytest

from offline_drm.encryption.keys import generate_key_material
from offline_drm.errors import Forbidden, NotFound
from offline_drm.registry import ResourceRegistry, ResourceStatus
from offline_drm.utils.clock import FrozenClock


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 1, tzinfo=UTC))


@pytest.fixture
def registry(tmp_path, clock):
    reg = ResourceRegistry(tmp_path / "registry.sqlite", clock=clock)
    reg.initialize()
    return reg


def _register(registry, owner="42", key="k1", url="https://example.test/a.mp4"):
    return registry.register(owner, key, url, "video", "Lecture 1", "CS101", "week-1")


class TestRegister:
    """Test registration and idempotency."""

    def test_new_resource_is_pending(self, registry, clock):
        resource, created = _register(registry)
        assert created
        assert resource.status is ResourceStatus.PENDING
        assert resource.created_at == clock.now
        assert resource.expires_at == clock.now + timedelta(days=7)
        assert resource.key_material is None
        assert resource.course_tag == "CS101"

    def test_same_owner_and_key_returns_existing(self, registry):
        first, _ = _register(registry)
        second, created = _register(registry)
        assert not created
        assert second.id == first.id
        assert len(registry.list_all()) == 1

    def test_different_owners_get_separate_rows(self, registry):
        a, _ = _register(registry, owner="42")
        b, _ = _register(registry, owner="43")
        assert a.id != b.id

    def test_revoked_row_is_replaced(self, registry):
        first, _ = _register(registry)
        registry.set_status(first.id, ResourceStatus.REVOKED)
        second, created = _register(registry)
        assert created
        assert second.id != first.id
        assert registry.get(first.id) is None


class TestOwnership:
    """Test owner-scoped lookup."""

    def test_get_for_owner(self, registry):
        resource, _ = _register(registry)
        assert registry.get_for_owner(resource.id, "42").id == resource.id

    def test_not_found_and_forbidden_are_distinct(self, registry):
        resource, _ = _register(registry)
        with pytest.raises(NotFound):
            registry.get_for_owner("missing-id", "42")
        with pytest.raises(Forbidden):
            registry.get_for_owner(resource.id, "43")


class TestStatusTransitions:
    """Test key material commit and status changes."""

    def test_commit_activates_pending(self, registry):
        resource, _ = _register(registry)
        km = generate_key_material()
        assert registry.set_key_material(resource.id, km, 1234, plaintext_size_bytes=1000)
        active = registry.get(resource.id)
        assert active.status is ResourceStatus.ACTIVE
        assert active.key_material == km
        assert active.ciphertext_size_bytes == 1234
        assert active.plaintext_size_bytes == 1000

    def test_commit_refused_unless_pending(self, registry):
        resource, _ = _register(registry)
        registry.set_status(resource.id, ResourceStatus.REVOKED)
        assert not registry.set_key_material(resource.id, generate_key_material(), 10)
        assert registry.get(resource.id).status is ResourceStatus.REVOKED

    def test_leaving_active_clears_key(self, registry):
        resource, _ = _register(registry)
        registry.set_key_material(resource.id, generate_key_material(), 10)
        registry.set_status(resource.id, ResourceStatus.EXPIRED)
        expired = registry.get(resource.id)
        assert expired.key_material is None
        assert expired.ciphertext_size_bytes == 0

    def test_active_only_through_commit(self, registry):
        resource, _ = _register(registry)
        with pytest.raises(ValueError):
            registry.set_status(resource.id, ResourceStatus.ACTIVE)

    def test_renew_expired(self, registry, clock):
        resource, _ = _register(registry)
        registry.set_status(resource.id, ResourceStatus.EXPIRED)
        clock.advance(timedelta(days=10))
        assert registry.renew(resource.id)
        renewed = registry.get(resource.id)
        assert renewed.status is ResourceStatus.PENDING
        assert renewed.created_at == clock.now
        assert renewed.expires_at == clock.now + timedelta(days=7)

    def test_renew_ignores_active(self, registry):
        resource, _ = _register(registry)
        registry.set_key_material(resource.id, generate_key_material(), 10)
        assert not registry.renew(resource.id)

    def test_touch_accessed(self, registry, clock):
        resource, _ = _register(registry)
        clock.advance(timedelta(hours=2))
        registry.touch_accessed(resource.id)
        assert registry.get(resource.id).last_accessed_at == clock.now


class TestFailureMarks:
    """Test recording and clearing failed pipeline runs."""

    def test_recorded_only_while_pending(self, registry):
        resource, _ = _register(registry)
        registry.set_key_material(resource.id, generate_key_material(), 10)
        assert not registry.record_failure(resource.id, "resource_unavailable")
        assert registry.get(resource.id).last_error is None

    def test_commit_clears_mark(self, registry):
        resource, _ = _register(registry)
        registry.record_failure(resource.id, "resource_unavailable")
        assert registry.get(resource.id).failed
        registry.set_key_material(resource.id, generate_key_material(), 10)
        assert not registry.get(resource.id).failed
        assert registry.get(resource.id).last_error is None

    def test_clear_failure(self, registry):
        resource, _ = _register(registry)
        registry.record_failure(resource.id, "resource_unavailable")
        assert registry.clear_failure(resource.id)
        assert not registry.get(resource.id).failed

    def test_status_change_clears_mark(self, registry):
        resource, _ = _register(registry)
        registry.record_failure(resource.id, "resource_unavailable")
        registry.set_status(resource.id, ResourceStatus.REVOKED)
        assert registry.get(resource.id).last_error is None


class TestListing:
    """Test listing queries."""

    def test_list_by_owner_has_no_key_material(self, registry):
        resource, _ = _register(registry)
        registry.set_key_material(resource.id, generate_key_material(), 10)
        summaries = registry.list_by_owner("42")
        assert [s.id for s in summaries] == [resource.id]
        payload = summaries[0].to_dict()
        assert "keyMaterial" not in payload
        assert "key_material" not in payload
        assert payload["status"] == "active"
        assert payload["sizeBytes"] == 10

    def test_failed_run_in_listing(self, registry):
        resource, _ = _register(registry)
        assert registry.record_failure(resource.id, "resource_unavailable")
        [summary] = registry.list_by_owner("42")
        assert summary.to_dict()["lastError"] == "resource_unavailable"
        assert summary.to_dict()["status"] == "pending"

    def test_list_by_owner_scoped(self, registry):
        _register(registry, owner="42")
        _register(registry, owner="43")
        assert len(registry.list_by_owner("42")) == 1

    def test_list_all_by_status(self, registry):
        a, _ = _register(registry, key="k1")
        b, _ = _register(registry, key="k2")
        registry.set_status(b.id, ResourceStatus.REVOKED)
        pending = registry.list_all([ResourceStatus.PENDING])
        assert [r.id for r in pending] == [a.id]
        assert registry.list_all([]) == []

    def test_delete(self, registry):
        resource, _ = _register(registry)
        assert registry.delete(resource.id)
        assert registry.get(resource.id) is None
        assert not registry.delete(resource.id)
