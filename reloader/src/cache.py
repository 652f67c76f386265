from __future__ import annotations

import threading
from collections.abc import Iterable

from reloader.src.metrics import METRICS
from reloader.src.models import SecretKey, SecretRef, TargetKey, TargetRef


class ResourceCache:
    """Local, eventually-consistent mirror of watched Secrets and targets.

    Only the event dispatcher thread calls the mutating methods; every other
    thread reads.  Stored values are immutable, so readers get a consistent
    object without holding the lock while they use it.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._secrets: dict[SecretKey, SecretRef] = {}
        self._targets: dict[TargetKey, TargetRef] = {}

    def get_secret(self, key: SecretKey) -> SecretRef | None:
        with self._lock:
            return self._secrets.get(key)

    def get_target(self, key: TargetKey) -> TargetRef | None:
        with self._lock:
            return self._targets.get(key)

    def secret_keys(self) -> list[SecretKey]:
        with self._lock:
            return list(self._secrets)

    def targets(self) -> list[TargetRef]:
        with self._lock:
            return list(self._targets.values())

    def upsert_secret(self, secret: SecretRef) -> None:
        with self._lock:
            self._secrets[secret.key] = secret
            self._record_size("Secret")

    def delete_secret(self, key: SecretKey) -> SecretRef | None:
        with self._lock:
            removed = self._secrets.pop(key, None)
            self._record_size("Secret")
            return removed

    def upsert_target(self, target: TargetRef) -> None:
        with self._lock:
            self._targets[target.key] = target
            self._record_size(target.key.kind)

    def delete_target(self, key: TargetKey) -> TargetRef | None:
        with self._lock:
            removed = self._targets.pop(key, None)
            self._record_size(key.kind)
            return removed

    def replace_secrets(self, secrets: Iterable[SecretRef]) -> set[SecretKey]:
        """Swap in a full Secret listing and return the keys that disappeared."""
        fresh = {secret.key: secret for secret in secrets}
        with self._lock:
            removed = set(self._secrets) - set(fresh)
            self._secrets = fresh
            self._record_size("Secret")
        return removed

    def replace_targets(self, kind: str, targets: Iterable[TargetRef]) -> set[TargetKey]:
        """Swap in a full listing of one target kind, leaving other kinds untouched."""
        fresh = {target.key: target for target in targets if target.key.kind == kind}
        with self._lock:
            removed = {key for key in self._targets if key.kind == kind and key not in fresh}
            kept = {key: value for key, value in self._targets.items() if key.kind != kind}
            kept.update(fresh)
            self._targets = kept
            self._record_size(kind)
        return removed

    def _record_size(self, kind: str) -> None:
        if kind == "Secret":
            METRICS.cached_objects.labels(kind=kind).set(len(self._secrets))
        else:
            METRICS.cached_objects.labels(kind=kind).set(
                sum(1 for key in self._targets if key.kind == kind)
            )


def resolve_targets(cache: ResourceCache, secret_key: SecretKey) -> frozenset[TargetRef]:
    """Return every cached target whose dependency declaration names *secret_key*.

    Targets with a malformed declaration have no dependencies and therefore
    never match.  A Secret nobody depends on resolves to an empty set.
    """
    return frozenset(target for target in cache.targets() if target.depends_on(secret_key))
