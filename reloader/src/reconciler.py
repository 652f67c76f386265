from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from reloader.src.cache import ResourceCache, resolve_targets
from reloader.src.fingerprint import fingerprint, fingerprint_annotation_key
from reloader.src.kube import PatchClient, PatchOutcome
from reloader.src.metrics import METRICS
from reloader.src.models import SecretKey, TargetKey, TargetRef
from reloader.src.workqueue import RateLimitingQueue


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of one reconcile pass for a single Secret.

    ``converged`` is ``False`` when at least one target hit a conflict or a
    transient error, in which case the key was re-queued with backoff.
    """

    secret: SecretKey
    matched_targets: int = 0
    patched: int = 0
    unchanged: int = 0
    conflicts: int = 0
    failed: int = 0
    missing: int = 0
    secret_found: bool = True

    @property
    def converged(self) -> bool:
        return self.conflicts == 0 and self.failed == 0


class SecretReconciler:
    """Propagate a Secret's fingerprint onto every target that declares it.

    Each pass reads only current state (cache contents and target
    annotations), so a pass can be repeated any number of times: once the
    cache has caught up with earlier patches, a pass over unchanged content
    issues no writes, and a failed pass is simply redone in full on the next
    dequeue.  Retries are never performed inline; they are expressed as a
    rate-limited re-add on the work queue.
    """

    def __init__(
        self,
        cache: ResourceCache,
        work_queue: RateLimitingQueue[SecretKey],
        patch_client: PatchClient,
        fingerprint_prefix: str = "secret-fingerprint",
        logger: logging.Logger | None = None,
    ) -> None:
        self.cache = cache
        self.work_queue = work_queue
        self.patch_client = patch_client
        self.fingerprint_prefix = fingerprint_prefix
        self.logger = logger or logging.getLogger(__name__)
        # (target, annotation key) -> resourceVersion the target had when we patched it.
        self._written: dict[tuple[TargetKey, str], str] = {}
        self._written_lock = threading.Lock()

    def _cache_predates_own_write(self, target: TargetRef, annotation_key: str) -> bool:
        """Return ``True`` while the cached *target* is older than our last patch of it.

        The watch delivers our own writes asynchronously, so until the cached
        resourceVersion moves past the one we patched against, the cached
        annotations cannot be trusted for the Diff step.
        """
        entry = (target.key, annotation_key)
        with self._written_lock:
            written_at = self._written.get(entry)
            if written_at is None:
                return False
            if written_at == target.resource_version:
                return True
            del self._written[entry]
            return False

    def _record_write(self, target: TargetRef, annotation_key: str) -> None:
        if target.resource_version is None:
            return
        with self._written_lock:
            self._written[(target.key, annotation_key)] = target.resource_version

    def _forget_target(self, target: TargetRef, annotation_key: str) -> None:
        with self._written_lock:
            self._written.pop((target.key, annotation_key), None)

    def reconcile(self, key: SecretKey) -> ReconcileResult:
        """Run Fetch, Resolve, Compute, Diff and Patch for *key* and return the tally."""
        secret = self.cache.get_secret(key)
        if secret is None:
            # Deleted Secret: dependents keep their last fingerprint until redeployed.
            self.logger.info(
                "Secret %s is not present; leaving dependents untouched",
                key,
                extra={"secret": str(key)},
            )
            return ReconcileResult(secret=key, secret_found=False)

        targets = resolve_targets(self.cache, key)
        if not targets:
            self.logger.debug("No targets depend on Secret %s", key, extra={"secret": str(key)})
            return ReconcileResult(secret=key)

        value = fingerprint(secret)
        patched = unchanged = conflicts = failed = missing = 0

        for target in sorted(targets, key=lambda t: t.key):
            annotation_key = fingerprint_annotation_key(
                self.fingerprint_prefix, key, target.key.namespace
            )
            stale = self._cache_predates_own_write(target, annotation_key)
            if not stale and target.template_annotations.get(annotation_key) == value:
                unchanged += 1
                continue

            outcome = self.patch_client.patch_annotation(target, annotation_key, value)
            log_extra = {"secret": str(key), "target": str(target.key), "outcome": outcome.value}
            if outcome is PatchOutcome.SUCCESS:
                patched += 1
                self._record_write(target, annotation_key)
                self.logger.info(
                    "Set %s=%s on %s", annotation_key, value, target.key, extra=log_extra
                )
            elif outcome is PatchOutcome.NOT_FOUND:
                missing += 1
                self._forget_target(target, annotation_key)
                self.logger.info(
                    "Target %s vanished before it could be patched", target.key, extra=log_extra
                )
            elif outcome is PatchOutcome.CONFLICT:
                conflicts += 1
                self.logger.debug(
                    "Target %s changed since it was observed; will retry",
                    target.key,
                    extra=log_extra,
                )
            else:
                failed += 1

        return ReconcileResult(
            secret=key,
            matched_targets=len(targets),
            patched=patched,
            unchanged=unchanged,
            conflicts=conflicts,
            failed=failed,
            missing=missing,
        )

    def process_next_item(self) -> bool:
        """Take one key off the queue, reconcile it and settle it.

        Returns ``False`` once the queue has been shut down, which tells the
        worker loop to exit.
        """
        key = self.work_queue.get()
        if key is None:
            return False

        started = time.monotonic()
        try:
            result = self.reconcile(key)
        except Exception:
            self.logger.exception("Reconcile of Secret %s crashed", key, extra={"secret": str(key)})
            result = None

        try:
            if result is not None and result.converged:
                self.work_queue.forget(key)
                METRICS.reconciles_total.labels(result="success").inc()
            else:
                delay = self.work_queue.add_rate_limited(key)
                METRICS.reconciles_total.labels(
                    result="error" if result is None else "requeued"
                ).inc()
                if result is not None and result.failed:
                    self.logger.warning(
                        "Reconcile of Secret %s left %d target(s) failed; retrying in %.2fs",
                        key,
                        result.failed,
                        delay,
                        extra={"secret": str(key)},
                    )
        finally:
            self.work_queue.done(key)
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
        return True

    def run_worker(self) -> None:
        while self.process_next_item():
            pass
