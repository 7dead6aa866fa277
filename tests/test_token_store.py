"""Tests for the bearer token store."""

from datetime import timedelta

from tepco_collector.token_store import TokenStore


def test_empty_store_is_expired(db_path, clock):
    store = TokenStore(db_path, clock=clock)

    assert store.get_valid() is None
    assert store.is_expired()
    assert store.get_expiry() is None


def test_stored_token_is_valid_until_expiry(db_path, clock):
    store = TokenStore(db_path, clock=clock)
    expires_at = clock() + timedelta(hours=24)
    store.store("abc", expires_at)

    current = store.get_valid()
    assert current.token == "abc"
    assert current.expires_at == expires_at
    assert not store.is_expired()

    clock.advance(hours=23, minutes=59)
    assert store.get_valid().token == "abc"

    clock.advance(minutes=1)
    assert store.get_valid() is None
    assert store.is_expired()
    assert store.get_expiry() == expires_at


def test_store_replaces_previous_token(db_path, clock):
    store = TokenStore(db_path, clock=clock)
    store.store("old", clock() + timedelta(hours=24))
    clock.advance(minutes=5)
    store.store("new", clock() + timedelta(hours=24))

    assert store.get_valid().token == "new"


def test_already_expired_token_is_never_returned(db_path, clock):
    store = TokenStore(db_path, clock=clock)
    store.store("stale", clock() - timedelta(seconds=1))

    assert store.get_valid() is None
    assert store.is_expired()


def test_clear(db_path, clock):
    store = TokenStore(db_path, clock=clock)
    store.store("abc", clock() + timedelta(hours=24))
    store.clear()

    assert store.get_valid() is None
    assert store.get_expiry() is None
