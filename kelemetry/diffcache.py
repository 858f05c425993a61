"""Storage of object diffs and snapshots, keyed by resource version."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from kelemetry.diffcmp import DiffList

SNAPSHOT_NAME_DELETION = "deletion"

_VERB_TO_SNAPSHOT_NAME = {
    "delete": SNAPSHOT_NAME_DELETION,
}

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def snapshot_name_for_verb(verb: str) -> str | None:
    """Name of the snapshot taken for an audit verb, or None if there is none."""
    return _VERB_TO_SNAPSHOT_NAME.get(verb)


@dataclass
class Patch:
    """The diff between two resource versions of an object."""

    informer_time: datetime
    old_resource_version: str
    new_resource_version: str
    redacted: bool = False
    diff_list: DiffList = field(default_factory=DiffList)


@dataclass
class Snapshot:
    """A JSON copy of an object at one resource version."""

    resource_version: str
    value: str = ""
    redacted: bool = False


class NoNewResourceVersionError(LookupError):
    """Raised when a lookup needs the new resource version and none is given."""

    label = "NoNewRv"

    def __init__(self) -> None:
        super().__init__(self.label)


@dataclass
class CommonOptions:
    """Settings shared by every diff cache implementation."""

    patch_ttl: timedelta = timedelta(minutes=10)
    snapshot_ttl: timedelta = timedelta(minutes=10)
    enable_cache_wrapper: bool = False
    use_old_resource_version: bool = False

    def choose_resource_version(self, old_rv: str, new_rv: str | None) -> str:
        """Pick the resource version that patches are indexed by."""
        if self.use_old_resource_version:
            return old_rv
        if new_rv is not None:
            return new_rv
        raise NoNewResourceVersionError()


class DiffCache(Protocol):
    options: CommonOptions

    def store(self, object_ref: Any, patch: Patch) -> None: ...

    def fetch(
        self, object_ref: Any, old_resource_version: str, new_resource_version: str | None
    ) -> Patch | None: ...

    def store_snapshot(self, object_ref: Any, snapshot_name: str, snapshot: Snapshot) -> None: ...

    def fetch_snapshot(self, object_ref: Any, snapshot_name: str) -> Snapshot | None: ...

    def list(self, object_ref: Any, limit: int) -> list[str]: ...


class _TtlCache:
    """Values that expire a fixed time after being added; a ttl of zero never expires."""

    def __init__(self, ttl: timedelta, clock: Clock) -> None:
        self._ttl = ttl
        self._clock = clock
        self._items: dict[str, tuple[datetime, Any]] = {}
        self._lock = threading.RLock()

    def _expired(self, added: datetime, now: datetime) -> bool:
        return self._ttl > timedelta(0) and now - added > self._ttl

    def add(self, key: str, value: Any) -> None:
        with self._lock:
            self._items[key] = (self._clock(), value)

    def get(self, key: str) -> tuple[bool, Any]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return False, None
            added, value = item
            if self._expired(added, self._clock()):
                del self._items[key]
                return False, None
            return True, value

    def cleanup(self) -> None:
        with self._lock:
            now = self._clock()
            for key in [k for k, (added, _) in self._items.items() if self._expired(added, now)]:
                del self._items[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


@dataclass
class _History:
    last_modify: datetime
    patches: dict[str, Patch] = field(default_factory=dict)


class LocalDiffCache:
    """Keeps patches and snapshots in process memory."""

    def __init__(self, options: CommonOptions | None = None, clock: Clock = _utc_now) -> None:
        self.options = options if options is not None else CommonOptions()
        self._clock = clock
        self._data: dict[str, _History] = {}
        self._lock = threading.RLock()
        self._snapshots = _TtlCache(self.options.snapshot_ttl, clock)

    def store(self, object_ref: Any, patch: Patch) -> None:
        key_rv = self.options.choose_resource_version(
            patch.old_resource_version, patch.new_resource_version
        )
        with self._lock:
            history = self._data.setdefault(str(object_ref), _History(last_modify=self._clock()))
            history.last_modify = self._clock()
            history.patches[key_rv] = patch

    def fetch(
        self, object_ref: Any, old_resource_version: str, new_resource_version: str | None
    ) -> Patch | None:
        key_rv = self.options.choose_resource_version(old_resource_version, new_resource_version)
        with self._lock:
            history = self._data.get(str(object_ref))
            if history is None:
                return None
            return history.patches.get(key_rv)

    def store_snapshot(self, object_ref: Any, snapshot_name: str, snapshot: Snapshot) -> None:
        self._snapshots.add(f"{object_ref}/{snapshot_name}", snapshot)

    def fetch_snapshot(self, object_ref: Any, snapshot_name: str) -> Snapshot | None:
        found, value = self._snapshots.get(f"{object_ref}/{snapshot_name}")
        return value if found else None

    def list(self, object_ref: Any, limit: int) -> list[str]:
        """Resource versions with a stored patch; the limit is not applied."""
        with self._lock:
            history = self._data.get(str(object_ref))
            return [] if history is None else list(history.patches)

    def trim(self, expiry: timedelta) -> None:
        """Drop objects not modified within ``expiry`` and expired snapshots."""
        now = self._clock()
        with self._lock:
            stale = [k for k, h in self._data.items() if now - h.last_modify > expiry]
            for key in stale:
                del self._data[key]
        self._snapshots.cleanup()


def _wrapper_key(object_ref: Any, subkey: str) -> str:
    return f"{object_ref}/{subkey}"


class CacheWrapper:
    """An in-memory layer in front of another diff cache."""

    def __init__(self, delegate: DiffCache, options: CommonOptions | None = None,
                 clock: Clock = _utc_now) -> None:
        self.delegate = delegate
        self.options = options if options is not None else delegate.options
        self._patches = _TtlCache(self.options.patch_ttl, clock)
        self._snapshots = _TtlCache(self.options.snapshot_ttl, clock)

    @property
    def size(self) -> int:
        """Number of patches held in memory."""
        return len(self._patches)

    def store(self, object_ref: Any, patch: Patch) -> None:
        self.delegate.store(object_ref, patch)
        self._patches.add(_wrapper_key(object_ref, patch.new_resource_version), patch)

    def fetch(
        self, object_ref: Any, old_resource_version: str, new_resource_version: str | None
    ) -> Patch | None:
        key_rv = self.options.choose_resource_version(old_resource_version, new_resource_version)
        key = _wrapper_key(object_ref, key_rv)
        found, patch = self._patches.get(key)
        if found:
            return patch

        patch = self.delegate.fetch(object_ref, old_resource_version, new_resource_version)
        if patch is not None:
            self._patches.add(key, patch)
        return patch

    def store_snapshot(self, object_ref: Any, snapshot_name: str, snapshot: Snapshot) -> None:
        self.delegate.store_snapshot(object_ref, snapshot_name, snapshot)
        self._snapshots.add(_wrapper_key(object_ref, snapshot_name), snapshot)

    def fetch_snapshot(self, object_ref: Any, snapshot_name: str) -> Snapshot | None:
        found, value = self._patches.get(_wrapper_key(object_ref, snapshot_name))
        if found:
            return value
        return self.delegate.fetch_snapshot(object_ref, snapshot_name)

    def list(self, object_ref: Any, limit: int) -> list[str]:
        # new keys are never announced, so listing always goes to the delegate
        return self.delegate.list(object_ref, limit)