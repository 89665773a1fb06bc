"""Tests for the state store: single use, TTL, garbage collection, concurrent consumption."""
import threading

import pytest
from sqlalchemy.orm import sessionmaker

from oidc_rp.database import init_db, make_engine
from oidc_rp.errors import InvalidState
from oidc_rp.state_store import StateStore, generate_state


def test_generate_state_is_random_and_urlsafe():
    a, b = generate_state(), generate_state()
    assert a != b
    assert len(a) >= 43  # 32 bytes base64url
    assert all(c.isalnum() or c in "-_" for c in a)


def test_create_then_consume_returns_payload(db, clock):
    store = StateStore(db, ttl=180, now=clock)
    token = store.create({"origin_url": "/dashboard"})
    assert store.validate_and_consume(token) == {"origin_url": "/dashboard"}


def test_second_consumption_fails(db, clock):
    store = StateStore(db, ttl=180, now=clock)
    token = store.create({"origin_url": "/"})
    store.validate_and_consume(token)
    with pytest.raises(InvalidState):
        store.validate_and_consume(token)


def test_unknown_and_missing_token(db, clock):
    store = StateStore(db, now=clock)
    with pytest.raises(InvalidState):
        store.validate_and_consume("never-issued")
    with pytest.raises(InvalidState):
        store.validate_and_consume(None)
    with pytest.raises(InvalidState):
        store.validate_and_consume("")


def test_expired_token_fails_even_if_never_consumed(db, clock):
    store = StateStore(db, ttl=180, now=clock)
    token = store.create({})
    clock.advance(181)
    with pytest.raises(InvalidState) as exc:
        store.validate_and_consume(token)
    assert "expired" in str(exc.value).lower()
    # The expired record was evicted by the access
    assert store.count() == 0


def test_token_valid_exactly_at_ttl(db, clock):
    store = StateStore(db, ttl=180, now=clock)
    token = store.create({"k": "v"})
    clock.advance(180)
    assert store.validate_and_consume(token) == {"k": "v"}


def test_garbage_collect_keeps_live_records(db, clock):
    store = StateStore(db, ttl=180, now=clock)
    token = store.create({"origin_url": "/a"})
    clock.advance(100)
    assert store.garbage_collect() == 0
    assert store.count() == 1
    assert store.validate_and_consume(token) == {"origin_url": "/a"}


def test_garbage_collect_removes_only_expired(db, clock):
    store = StateStore(db, ttl=180, now=clock)
    old = store.create({})
    clock.advance(120)
    fresh = store.create({})
    clock.advance(61)  # old is 181s old, fresh 61s
    assert store.garbage_collect() == 1
    assert store.garbage_collect() == 0  # idempotent
    with pytest.raises(InvalidState):
        store.validate_and_consume(old)
    assert store.validate_and_consume(fresh) == {}


def test_expired_record_unreachable_without_gc(db, clock):
    store = StateStore(db, ttl=10, now=clock)
    token = store.create({})
    clock.advance(11)
    with pytest.raises(InvalidState):
        store.validate_and_consume(token)


def test_concurrent_consumption_has_exactly_one_winner(tmp_path):
    """Separate connections (as separate workers would have) race on the same token."""
    engine = make_engine(f"sqlite:///{tmp_path / 'states.db'}")
    init_db(bind=engine)
    Session = sessionmaker(bind=engine)

    setup = Session()
    token = StateStore(setup).create({"origin_url": "/race"})
    setup.close()

    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def consume():
        db = Session()
        try:
            barrier.wait()
            try:
                payload = StateStore(db).validate_and_consume(token)
                outcome = ("ok", payload)
            except InvalidState:
                outcome = ("invalid", None)
        finally:
            db.close()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=consume) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert len(results) == workers
    winners = [r for r in results if r[0] == "ok"]
    assert len(winners) == 1
    assert winners[0][1] == {"origin_url": "/race"}
    engine.dispose()
