from datetime import timedelta

import pytest

from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.memory import MemoryStore
from authkernel.storage.models import RefreshToken, Role


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("ada@example.com", "hash", "Ada", "Lovelace")


def _record(user_id, token, clock, **kwargs):
    return RefreshToken(
        id=f"id-{token}",
        token=token,
        user_id=user_id,
        expires_at=kwargs.get("expires_at", clock.now + timedelta(days=7)),
        created_at=clock.now,
    )


class TestUsers:
    def test_create_and_lookup(self, memory_store, user):
        assert memory_store.get_user(user.id).email == "ada@example.com"
        assert memory_store.get_user_by_email("ada@example.com").id == user.id
        assert memory_store.get_user_by_email("nobody@example.com") is None
        assert user.role == Role.USER
        assert user.is_active

    def test_duplicate_email_violates_constraint(self, memory_store, user):
        with pytest.raises(ConstraintViolation):
            memory_store.create_user("ada@example.com", "hash", "Other", "Person")

    def test_returned_records_are_copies(self, memory_store, user):
        user.first_name = "Mutated"
        assert memory_store.get_user(user.id).first_name == "Ada"

    def test_update_rejects_unknown_fields(self, memory_store, user):
        with pytest.raises(ValueError):
            memory_store.update_user(user.id, id="other")

    def test_update_email_collision(self, memory_store, user):
        memory_store.create_user("grace@example.com", "hash", "Grace", "Hopper")

        with pytest.raises(ConstraintViolation):
            memory_store.update_user(user.id, email="grace@example.com")

    def test_update_missing_user(self, memory_store):
        assert memory_store.update_user("missing", first_name="X") is None

    def test_update_bumps_updated_at(self, memory_store, user, clock):
        clock.advance(minutes=1)
        updated = memory_store.update_user(user.id, role="ADMIN")

        assert updated.role == Role.ADMIN
        assert updated.updated_at == clock.now
        assert updated.created_at == user.created_at


class TestRefreshTokens:
    def test_rotate_is_single_use(self, memory_store, user, clock):
        memory_store.create_refresh_token(_record(user.id, "t1", clock))

        assert memory_store.rotate_refresh_token("t1", _record(user.id, "t2", clock))
        assert not memory_store.rotate_refresh_token("t1", _record(user.id, "t3", clock))
        assert memory_store.get_refresh_token("t1") is None
        assert memory_store.get_refresh_token("t2") is not None
        assert memory_store.get_refresh_token("t3") is None

    def test_rotation_failure_keeps_old_token(self, memory_store, user, clock):
        memory_store.create_refresh_token(_record(user.id, "t1", clock))
        memory_store.create_refresh_token(_record(user.id, "t2", clock))

        with pytest.raises(ConstraintViolation):
            memory_store.rotate_refresh_token("t1", _record(user.id, "t2", clock))
        assert memory_store.get_refresh_token("t1") is not None

    def test_token_for_unknown_user_rejected(self, memory_store, clock):
        with pytest.raises(ConstraintViolation):
            memory_store.create_refresh_token(_record("ghost", "t1", clock))

    def test_delete_counts(self, memory_store, user, clock):
        memory_store.create_refresh_token(_record(user.id, "t1", clock))

        assert memory_store.delete_refresh_token("t1") == 1
        assert memory_store.delete_refresh_token("t1") == 0

    def test_deactivate_cascades(self, memory_store, user, clock):
        other = memory_store.create_user("grace@example.com", "hash", "Grace", "Hopper")
        memory_store.create_refresh_token(_record(user.id, "t1", clock))
        memory_store.create_refresh_token(_record(user.id, "t2", clock))
        memory_store.create_refresh_token(_record(other.id, "t3", clock))

        deactivated = memory_store.deactivate_user(user.id)

        assert deactivated.is_active is False
        assert memory_store.get_refresh_token("t1") is None
        assert memory_store.get_refresh_token("t2") is None
        assert memory_store.get_refresh_token("t3") is not None
        assert memory_store.deactivate_user("missing") is None

    def test_delete_user_tokens(self, memory_store, user, clock):
        memory_store.create_refresh_token(_record(user.id, "t1", clock))
        memory_store.create_refresh_token(_record(user.id, "t2", clock))

        assert memory_store.delete_user_refresh_tokens(user.id) == 2

    def test_expired_sweep(self, memory_store, user, clock):
        memory_store.create_refresh_token(
            _record(user.id, "old", clock, expires_at=clock.now - timedelta(seconds=1))
        )
        memory_store.create_refresh_token(_record(user.id, "fresh", clock))

        assert memory_store.delete_expired_refresh_tokens(clock.now) == 1
        assert memory_store.get_refresh_token("fresh") is not None
