import json
import threading
from datetime import timedelta

import pytest

from conftest import T0
from intake.errors import StoreError
from intake.models import Actor, ConversationRecord, Stage, Status
from intake.config import load_settings
from intake.store import FileConversationStore, RedisConversationStore, build_store, lock_ttl_for, merge_records
from intake.transport import dispatch_budget_seconds

CANON = "whatsapp:+34600112233"


def _create(store, identity=CANON, at=T0):
    def mutate(current):
        rec = current or ConversationRecord.new(identity, at)
        rec.append_history(Actor.USER, "hola", at)
        return rec

    return store.upsert(identity, mutate)


def test_upsert_creates_and_versions(make_store):
    store = make_store()
    first = _create(store)
    second = _create(store, "0034 600 112 233")

    assert first.id == CANON
    assert second.version == first.version + 1
    assert len(store.get("+34600112233").history) == 2


def test_mutator_receives_copy_and_none_means_no_write(make_store):
    store = make_store()
    _create(store)

    def sneaky(current):
        current.stage = Stage.ESCALATED  # mutating the copy only
        return None

    store.upsert(CANON, sneaky)
    assert store.get(CANON).stage == Stage.INITIAL


def test_mutator_cannot_change_id(make_store):
    store = make_store()
    _create(store)

    def rename(current):
        current.id = "whatsapp:+34999999999"
        return current

    with pytest.raises(StoreError):
        store.upsert(CANON, rename)


def test_records_survive_reload(tmp_path, make_store):
    store = make_store()
    _create(store)
    reloaded = FileConversationStore(store.path)
    rec = reloaded.get(CANON)
    assert rec is not None
    assert rec.history[0].text == "hola"
    assert rec.created_at == T0


def test_corrupt_file_is_quarantined_and_store_starts_empty(tmp_path):
    path = tmp_path / "conversations.json"
    path.write_text("{not json", encoding="utf-8")

    store = FileConversationStore(str(path))

    assert store.all() == []
    assert any(p.name.startswith("conversations.json.corrupt-") for p in tmp_path.iterdir())
    assert json.loads(path.read_text(encoding="utf-8")) == {}


def test_legacy_keys_are_merged_and_persisted_once(tmp_path):
    old = ConversationRecord.new(CANON, T0)
    old.fields = {"direccion": "Calle Mayor 1"}
    old.append_history(Actor.USER, "primero", T0)
    new = ConversationRecord.new(CANON, T0 + timedelta(minutes=5))
    new.stage = Stage.ATTENDEE_SELECT
    new.status = Status.AWAITING_ATTENDEE
    new.fields = {"identity_confirmed": True}
    new.append_history(Actor.USER, "segundo", T0 + timedelta(minutes=5))

    path = tmp_path / "conversations.json"
    raw = {"+34 600 112 233": old.to_dict(), "whatsapp:+34600112233": new.to_dict()}
    path.write_text(json.dumps(raw), encoding="utf-8")

    store = FileConversationStore(str(path))
    merged = store.get(CANON)

    assert merged.stage == Stage.ATTENDEE_SELECT
    assert merged.created_at == T0
    assert merged.fields == {"direccion": "Calle Mayor 1", "identity_confirmed": True}
    assert [h.text for h in merged.history] == ["primero", "segundo"]
    assert list(json.loads(path.read_text(encoding="utf-8"))) == [CANON]


def test_merge_records_dedupes_history():
    a = ConversationRecord.new(CANON, T0)
    a.append_history(Actor.USER, "hola", T0)
    b = a.copy()
    b.append_history(Actor.SYSTEM, "respuesta", T0 + timedelta(seconds=1))
    merged = merge_records(CANON, [b, a])
    assert [h.text for h in merged.history] == ["hola", "respuesta"]


def test_scan_due_only_returns_records_with_passed_timers(make_store):
    store = make_store()

    def pending_due(at):
        def mutate(current):
            rec = current or ConversationRecord.new(CANON, T0)
            rec.next_reminder_at = at
            return rec

        return mutate

    store.upsert(CANON, pending_due(T0 + timedelta(hours=1)))
    assert store.scan_due(lambda rec, now: True, T0) == []

    due = store.scan_due(lambda rec, now: True, T0 + timedelta(hours=2))
    assert [r.id for r in due] == [CANON]
    # still due until a mutation moves the timer
    assert len(store.scan_due(lambda rec, now: True, T0 + timedelta(hours=2))) == 1

    store.upsert(CANON, pending_due(T0 + timedelta(hours=5)))
    assert store.scan_due(lambda rec, now: True, T0 + timedelta(hours=2)) == []


def test_concurrent_upserts_on_one_key_do_not_lose_updates(make_store):
    store = make_store()
    _create(store)

    def bump(_):
        def mutate(current):
            current.attempts += 1
            return current

        for _ in range(10):
            store.upsert(CANON, mutate)

    threads = [threading.Thread(target=bump, args=(i,)) for i in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.get(CANON).attempts == 50


def test_delete(make_store):
    store = make_store()
    _create(store)
    assert store.delete(CANON) is True
    assert store.get(CANON) is None
    assert store.delete(CANON) is False


def test_key_locks_are_dropped_once_idle(make_store):
    store = make_store()
    for n in range(5):
        _create(store, f"whatsapp:+3460011223{n}")
    store.delete("whatsapp:+34600112230")
    assert store._key_locks == {}


class FakeRedis:
    """Just enough of redis-py for the conversation store."""

    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    def scan_iter(self, match=None):
        prefix = (match or "*").rstrip("*")
        return [k for k in list(self.data) if k.startswith(prefix)]

    def eval(self, script, numkeys, *args):
        keys, argv = args[:numkeys], args[numkeys:]
        if self.data.get(keys[0]) != argv[0]:
            return 0
        if "'SET'" in script:
            self.data[keys[1]] = argv[1]
        else:
            del self.data[keys[0]]
        return 1


def test_redis_store_roundtrip_and_lock_release():
    r = FakeRedis()
    store = RedisConversationStore(r, prefix="t")
    _create(store)

    assert store.get("+34600112233").id == CANON
    assert f"t:conv:{CANON}" in r.data
    assert not any(k.startswith("t:lock:") for k in r.data)


def test_redis_store_heals_legacy_keys():
    r = FakeRedis()
    legacy = ConversationRecord.new(CANON, T0)
    r.data["t:conv:+34600112233"] = json.dumps(legacy.to_dict())

    store = RedisConversationStore(r, prefix="t")

    assert list(r.data) == [f"t:conv:{CANON}"]
    assert store.get(CANON) is not None


def test_redis_store_drops_corrupt_values():
    r = FakeRedis()
    r.data[f"t:conv:{CANON}"] = "{broken"
    store = RedisConversationStore(r, prefix="t")
    assert store.get(CANON) is None
    assert r.data == {}


def test_build_store_requires_redis_url_for_redis_backend(monkeypatch, tmp_path):
    monkeypatch.setenv("STORE_BACKEND", "redis")
    monkeypatch.delenv("REDIS_URL", raising=False)
    with pytest.raises(StoreError):
        build_store(load_settings())

    monkeypatch.setenv("STORE_BACKEND", "file")
    monkeypatch.setenv("CONVERSATIONS_FILE", str(tmp_path / "c.json"))
    assert isinstance(build_store(load_settings()), FileConversationStore)


def test_redis_write_is_refused_once_the_lease_is_lost():
    r = FakeRedis()
    store = RedisConversationStore(r, prefix="t")
    _create(store)
    before = r.data[f"t:conv:{CANON}"]

    def outlived_lease(current):
        # lease expired and another worker now holds the lock
        r.data[f"t:lock:{CANON}"] = "other-worker"
        current.fields["late"] = True
        return current

    with pytest.raises(StoreError):
        store.upsert(CANON, outlived_lease)
    assert r.data[f"t:conv:{CANON}"] == before
    assert r.data[f"t:lock:{CANON}"] == "other-worker"


def test_lock_ttl_outlasts_a_fully_retried_dispatch(monkeypatch):
    monkeypatch.setenv("DISPATCH_TIMEOUT_SECONDS", "10")
    monkeypatch.setenv("DISPATCH_RETRIES", "2")
    cfg = load_settings()
    assert dispatch_budget_seconds(10, 2) == 31.5
    assert lock_ttl_for(cfg) == 42

    monkeypatch.setenv("DISPATCH_TIMEOUT_SECONDS", "1")
    assert lock_ttl_for(load_settings()) == 30
