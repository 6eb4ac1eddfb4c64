"""
🗄️ Conversation Store
---------------------
Durable keyed store of ConversationRecords behind one contract:

    get(identity)                 → record or None
    upsert(identity, mutator)     → atomic per-key read-modify-write
    scan_due(predicate, now)      → consistent snapshot for the sweep
    delete(identity) / all()      → administrative helpers

Backends:
  • FileConversationStore  – whole-map JSON file, per-key threading locks,
                             min-heap due index
  • RedisConversationStore – one JSON value per key, redis NX locks, SCAN

Every access normalizes the identity first, so "whatsapp:+34 600…" and
"0034600…" always resolve to the same record.
"""

from __future__ import annotations

import heapq
import itertools
import json
import math
import os
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import redis

from .errors import InvalidIdentity, StoreError
from .identity import normalize_identity
from .models import ConversationRecord
from .runtime import get_logger, utc_now
from .transport import dispatch_budget_seconds

logger = get_logger("store")

LOCK_TTL_MARGIN_SECONDS = 10

Mutator = Callable[[Optional[ConversationRecord]], Optional[ConversationRecord]]
Predicate = Callable[[ConversationRecord, datetime], bool]
DueFn = Callable[[ConversationRecord], Optional[datetime]]


# ---------------------------------------------------------------------------
# Legacy key merge
# ---------------------------------------------------------------------------
def merge_records(identity: str, records: List[ConversationRecord]) -> ConversationRecord:
    """
    Merge duplicates that normalize to one identity.

    Scalars: last write wins (ordered by last_message_at).
    History: union ordered by timestamp.
    Collected fields: merged oldest → newest.
    """
    ordered = sorted(records, key=lambda r: r.last_message_at)
    merged = ordered[-1].copy()
    merged.id = identity
    merged.created_at = min(r.created_at for r in ordered)
    merged.version = max(r.version for r in ordered)

    fields: Dict[str, Any] = {}
    for rec in ordered:
        fields.update(rec.fields)
    merged.fields = fields

    seen = set()
    history = []
    for rec in ordered:
        for entry in rec.history:
            marker = (entry.actor, entry.text, entry.timestamp)
            if marker in seen:
                continue
            seen.add(marker)
            history.append(entry)
    history.sort(key=lambda h: h.timestamp)
    merged.history = history
    return merged


def _group_raw(raw_map: Dict[str, Any]) -> Tuple[Dict[str, ConversationRecord], bool]:
    """Parse a raw {key: dict} map, merging legacy keys. Returns (records, changed)."""
    groups: Dict[str, List[ConversationRecord]] = {}
    changed = False
    for raw_key, payload in raw_map.items():
        try:
            identity = normalize_identity(raw_key)
        except InvalidIdentity:
            logger.warning("🧹 Dropping record with unusable key %r", raw_key)
            changed = True
            continue
        if not isinstance(payload, dict):
            logger.warning("🧹 Dropping malformed record for %s", identity)
            changed = True
            continue
        try:
            rec = ConversationRecord.from_dict(payload, identity=identity)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("🧹 Dropping unreadable record for %s: %s", identity, exc)
            changed = True
            continue
        if raw_key != identity or payload.get("id") != identity:
            changed = True
        groups.setdefault(identity, []).append(rec)

    records: Dict[str, ConversationRecord] = {}
    for identity, recs in groups.items():
        if len(recs) > 1:
            logger.info("🔗 Merging %s legacy entries into %s", len(recs), identity)
            changed = True
            records[identity] = merge_records(identity, recs)
        else:
            records[identity] = recs[0]
    return records, changed


# ---------------------------------------------------------------------------
# Base contract
# ---------------------------------------------------------------------------
class ConversationStore:
    """
    Template for both backends. Subclasses provide ``_locked``, ``_read``,
    ``_write``, ``_remove`` and ``_candidates``.

    ``upsert`` hands the mutator a *copy* of the current record (or None when
    absent). Returning None leaves the stored record untouched.
    """

    def __init__(self, due_at: Optional[DueFn] = None):
        self.due_at = due_at

    # ---- public API ----
    def get(self, identity: str) -> Optional[ConversationRecord]:
        key = normalize_identity(identity)
        rec = self._read(key)
        return rec.copy() if rec is not None else None

    def upsert(self, identity: str, mutator: Mutator) -> Optional[ConversationRecord]:
        key = normalize_identity(identity)
        with self._locked(key):
            current = self._read(key)
            draft = mutator(current.copy() if current is not None else None)
            if draft is None:
                return current.copy() if current is not None else None
            if draft.id != key:
                raise StoreError(f"mutator changed record id {key!r} → {draft.id!r}")
            draft.version = (current.version if current is not None else draft.version) + 1
            self._write(key, draft)
            return draft.copy()

    def scan_due(self, predicate: Predicate, now: Optional[datetime] = None) -> List[ConversationRecord]:
        now = now or utc_now()
        out = []
        for rec in self._candidates(now):
            try:
                if predicate(rec, now):
                    out.append(rec.copy())
            except Exception as exc:
                logger.error("scan_due predicate failed for %s: %s", rec.id, exc, exc_info=exc)
        return out

    def delete(self, identity: str) -> bool:
        key = normalize_identity(identity)
        with self._locked(key):
            return self._remove(key)

    def all(self) -> List[ConversationRecord]:
        return [rec.copy() for rec in self._candidates(None)]

    # ---- backend hooks ----
    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:  # pragma: no cover - abstract
        raise NotImplementedError
        yield

    def _read(self, key: str) -> Optional[ConversationRecord]:  # pragma: no cover - abstract
        raise NotImplementedError

    def _write(self, key: str, record: ConversationRecord) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _remove(self, key: str) -> bool:  # pragma: no cover - abstract
        raise NotImplementedError

    def _candidates(self, now: Optional[datetime]) -> List[ConversationRecord]:  # pragma: no cover - abstract
        raise NotImplementedError


# ---------------------------------------------------------------------------
# File backend
# ---------------------------------------------------------------------------
class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class FileConversationStore(ConversationStore):
    """Whole-map JSON file; atomic rewrite on every upsert."""

    def __init__(self, path: str, due_at: Optional[DueFn] = None):
        super().__init__(due_at)
        self.path = path
        self._map_lock = threading.Lock()
        self._key_locks: Dict[str, _KeyLock] = {}
        self._key_locks_guard = threading.Lock()
        self._records: Dict[str, ConversationRecord] = {}
        self._heap: List[Tuple[datetime, int, str]] = []
        self._due: Dict[str, datetime] = {}
        self._seq = itertools.count()
        self._load()

    # ---- load / persist ----
    def _load(self) -> None:
        if not os.path.exists(self.path):
            self._records = {}
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
            if not isinstance(raw, dict):
                raise ValueError(f"expected a JSON object, got {type(raw).__name__}")
        except (OSError, ValueError) as exc:
            self._quarantine(exc)
            self._records = {}
            self._persist()
            return

        records, changed = _group_raw(raw)
        self._records = records
        for key, rec in records.items():
            self._index(key, rec)
        if changed:
            self._persist()
            logger.info("💾 Healed conversation store (%s records)", len(records))

    def _quarantine(self, exc: Exception) -> None:
        stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
        target = f"{self.path}.corrupt-{stamp}"
        try:
            os.replace(self.path, target)
            logger.error("❌ Conversation store unreadable (%s); moved to %s and reinitialized", exc, target)
        except OSError as move_exc:
            logger.error("❌ Conversation store unreadable (%s); could not move aside: %s", exc, move_exc)

    def _persist(self) -> None:
        payload = {key: rec.to_dict() for key, rec in self._records.items()}
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".conversations-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise StoreError(f"could not write {self.path}: {exc}") from exc

    # ---- due index ----
    def _index(self, key: str, rec: ConversationRecord) -> None:
        if self.due_at is None:
            return
        due = self.due_at(rec)
        if due is None:
            self._due.pop(key, None)
            return
        self._due[key] = due
        heapq.heappush(self._heap, (due, next(self._seq), key))

    # ---- hooks ----
    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        with self._key_locks_guard:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._key_locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    self._key_locks.pop(key, None)

    def _read(self, key: str) -> Optional[ConversationRecord]:
        with self._map_lock:
            return self._records.get(key)

    def _write(self, key: str, record: ConversationRecord) -> None:
        with self._map_lock:
            previous = self._records.get(key)
            self._records[key] = record
            try:
                self._persist()
            except StoreError:
                if previous is None:
                    self._records.pop(key, None)
                else:
                    self._records[key] = previous
                raise
            self._index(key, record)

    def _remove(self, key: str) -> bool:
        with self._map_lock:
            if key not in self._records:
                return False
            del self._records[key]
            self._due.pop(key, None)
            self._persist()
            return True

    def _candidates(self, now: Optional[datetime]) -> List[ConversationRecord]:
        with self._map_lock:
            if now is None or self.due_at is None:
                return list(self._records.values())
            due_keys = []
            seen = set()
            while self._heap and self._heap[0][0] <= now:
                due, _, key = heapq.heappop(self._heap)
                if key in seen or self._due.get(key) != due:
                    continue  # stale entry
                seen.add(key)
                due_keys.append((due, key))
            # still due until a mutation replaces them
            for due, key in due_keys:
                heapq.heappush(self._heap, (due, next(self._seq), key))
            return [self._records[key] for _, key in due_keys if key in self._records]


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------
_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
else
    return 0
end
"""

# write only while our lock token still holds the lease
_WRITE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    redis.call('SET', KEYS[2], ARGV[2])
    return 1
else
    return 0
end
"""


class RedisConversationStore(ConversationStore):
    """One JSON value per identity under ``<prefix>:conv:<id>``."""

    def __init__(
        self,
        client: Any,
        prefix: str = "intake",
        due_at: Optional[DueFn] = None,
        lock_ttl: int = 30,
        lock_timeout: float = 10.0,
    ):
        super().__init__(due_at)
        self.r = client
        self.prefix = prefix
        self.lock_ttl = lock_ttl
        self.lock_timeout = lock_timeout
        self._held = threading.local()
        self._heal()

    @classmethod
    def from_url(cls, url: str, *, tls: bool = False, prefix: str = "intake", due_at: Optional[DueFn] = None,
                 lock_ttl: int = 30):
        if tls and url.startswith("redis://"):
            url = "rediss://" + url[len("redis://"):]
        client = redis.from_url(url, decode_responses=True, socket_timeout=3)
        return cls(client, prefix=prefix, due_at=due_at, lock_ttl=lock_ttl)

    def _key(self, identity: str) -> str:
        return f"{self.prefix}:conv:{identity}"

    def _lock_key(self, identity: str) -> str:
        return f"{self.prefix}:lock:{identity}"

    def _tokens(self) -> Dict[str, str]:
        tokens = getattr(self._held, "tokens", None)
        if tokens is None:
            tokens = self._held.tokens = {}
        return tokens

    def _heal(self) -> None:
        raw: Dict[str, Any] = {}
        stored_keys: Dict[str, str] = {}
        for redis_key in self.r.scan_iter(match=f"{self.prefix}:conv:*"):
            ident = redis_key[len(f"{self.prefix}:conv:"):]
            value = self._load_json(redis_key)
            if value is None:
                continue
            raw[ident] = value
            stored_keys[ident] = redis_key
        records, changed = _group_raw(raw)
        if not changed:
            return
        for ident, redis_key in stored_keys.items():
            if ident not in records:
                self.r.delete(redis_key)
        for identity, rec in records.items():
            self.r.set(self._key(identity), json.dumps(rec.to_dict(), ensure_ascii=False))
        logger.info("💾 Healed redis conversation store (%s records)", len(records))

    def _load_json(self, redis_key: str) -> Optional[Dict[str, Any]]:
        value = self.r.get(redis_key)
        if value is None:
            return None
        try:
            data = json.loads(value)
            if not isinstance(data, dict):
                raise ValueError("not an object")
            return data
        except ValueError as exc:
            logger.error("❌ Corrupt conversation at %s (%s); discarding", redis_key, exc)
            self.r.delete(redis_key)
            return None

    # ---- hooks ----
    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        lock_key = self._lock_key(key)
        token = str(uuid.uuid4())
        deadline = time.monotonic() + self.lock_timeout
        while not self.r.set(lock_key, token, nx=True, ex=self.lock_ttl):
            if time.monotonic() >= deadline:
                raise StoreError(f"timed out waiting for lock on {key}")
            time.sleep(0.05)
        tokens = self._tokens()
        tokens[key] = token
        try:
            yield
        finally:
            tokens.pop(key, None)
            try:
                self.r.eval(_RELEASE_LUA, 1, lock_key, token)
            except redis.RedisError as exc:
                logger.warning("Lock release failed for %s: %s", key, exc)

    def _read(self, key: str) -> Optional[ConversationRecord]:
        data = self._load_json(self._key(key))
        if data is None:
            return None
        try:
            return ConversationRecord.from_dict(data, identity=key)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("❌ Unreadable conversation %s (%s); discarding", key, exc)
            self.r.delete(self._key(key))
            return None

    def _write(self, key: str, record: ConversationRecord) -> None:
        token = self._tokens().get(key)
        if token is None:
            raise StoreError(f"write to {key} without holding its lock")
        value = json.dumps(record.to_dict(), ensure_ascii=False)
        try:
            written = self.r.eval(_WRITE_LUA, 2, self._lock_key(key), self._key(key), token, value)
        except redis.RedisError as exc:
            raise StoreError(f"redis write failed for {key}: {exc}") from exc
        if not written:
            raise StoreError(f"lock on {key} expired before the write; update discarded")

    def _remove(self, key: str) -> bool:
        return bool(self.r.delete(self._key(key)))

    def _candidates(self, now: Optional[datetime]) -> List[ConversationRecord]:
        out = []
        prefix = f"{self.prefix}:conv:"
        for redis_key in self.r.scan_iter(match=f"{prefix}*"):
            rec = self._read(redis_key[len(prefix):])
            if rec is None:
                continue
            if now is not None and self.due_at is not None:
                due = self.due_at(rec)
                if due is None or due > now:
                    continue
            out.append(rec)
        return out


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------
def lock_ttl_for(cfg) -> int:
    """Lease long enough to cover a dispatch made while the lock is held."""
    budget = dispatch_budget_seconds(cfg.DISPATCH_TIMEOUT_SECONDS, cfg.DISPATCH_RETRIES)
    return max(30, math.ceil(budget) + LOCK_TTL_MARGIN_SECONDS)


def build_store(cfg, due_at: Optional[DueFn] = None) -> ConversationStore:
    if cfg.STORE_BACKEND == "redis":
        if not cfg.REDIS_URL:
            raise StoreError("STORE_BACKEND=redis requires REDIS_URL")
        ttl = lock_ttl_for(cfg)
        logger.info("🗄️ Using redis conversation store (prefix=%s, lock ttl=%ss)", cfg.REDIS_PREFIX, ttl)
        return RedisConversationStore.from_url(
            cfg.REDIS_URL, tls=cfg.REDIS_TLS, prefix=cfg.REDIS_PREFIX, due_at=due_at, lock_ttl=ttl
        )
    logger.info("🗄️ Using file conversation store at %s", cfg.CONVERSATIONS_FILE)
    return FileConversationStore(cfg.CONVERSATIONS_FILE, due_at=due_at)
