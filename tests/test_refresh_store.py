from datetime import timedelta

import pytest

from flickmeter.storage.errors import ConstraintViolation, RecordNotFound
from flickmeter.storage.memory import MemoryStore
from flickmeter.storage.models import RefreshToken, User, utcnow


def _store_with_user():
    store = MemoryStore()
    with store.provisioning() as tx:
        user = tx.insert_user("a@x.com", "SwiftOtter1")
    return store, user


def test_remember_me_sets_absolute_expiry():
    user = User(id=1, email="a@x.com", username="SwiftOtter1")

    remembered = RefreshToken.new(user, remember=True)
    plain = RefreshToken.new(user, remember=False)

    assert plain.expires_at is None
    delta = remembered.expires_at - remembered.created_at
    assert delta == timedelta(hours=720)
    assert remembered.id != plain.id
    assert len(remembered.id) >= 43


def test_create_then_get_returns_owner():
    store, user = _store_with_user()
    token = RefreshToken.new(user, remember=False)
    store.create_refresh_token(token)

    loaded = store.get_refresh_token(token.id)

    assert loaded.id == token.id
    assert loaded.user.id == user.id
    assert loaded.user.email == "a@x.com"


def test_get_returns_current_user_row_not_write_time_copy():
    store, user = _store_with_user()
    token = RefreshToken.new(user, remember=False)
    store.create_refresh_token(token)
    store.users[user.id].avatar_url = "https://img/new.png"

    assert store.get_refresh_token(token.id).user.avatar_url == "https://img/new.png"


def test_missing_token_is_record_not_found():
    store, _ = _store_with_user()
    with pytest.raises(RecordNotFound):
        store.get_refresh_token("does-not-exist")


def test_expired_remember_me_token_is_record_not_found():
    store, user = _store_with_user()
    token = RefreshToken(
        id="old",
        user=user,
        expires_at=utcnow() - timedelta(seconds=1),
        created_at=utcnow() - timedelta(hours=721),
    )
    store.create_refresh_token(token)

    with pytest.raises(RecordNotFound):
        store.get_refresh_token("old")


def test_delete_is_idempotent():
    store, user = _store_with_user()
    token = RefreshToken.new(user, remember=True)
    store.create_refresh_token(token)

    store.delete_refresh_token(token.id)
    store.delete_refresh_token(token.id)

    with pytest.raises(RecordNotFound):
        store.get_refresh_token(token.id)


def test_token_for_unknown_user_is_rejected():
    store = MemoryStore()
    ghost = User(id=99, email="ghost@x.com", username="GhostFox1")

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_refresh_token(RefreshToken.new(ghost, remember=False))
    assert excinfo.value.constraint == "user_id"


def test_duplicate_token_id_is_rejected():
    store, user = _store_with_user()
    store.create_refresh_token(RefreshToken(id="same", user=user))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_refresh_token(RefreshToken(id="same", user=user))
    assert excinfo.value.constraint == "id"
