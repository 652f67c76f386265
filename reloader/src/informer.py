from __future__ import annotations

import logging
import queue
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from reloader.src.cache import ResourceCache
from reloader.src.kube import KindApi
from reloader.src.metrics import METRICS
from reloader.src.models import (
    SecretKey,
    TargetKey,
    TargetRef,
    object_identity,
    secret_from_object,
    target_from_object,
)
from reloader.src.workqueue import RateLimitingQueue

SYNC = "SYNC"


class WatchSubscriptionError(RuntimeError):
    """Raised when the initial list of a watched kind is denied by the API server."""


@dataclass(frozen=True)
class Notification:
    """A change observed by an informer, handed to the dispatcher.

    ``event_type`` is a watch event type (``ADDED``, ``MODIFIED``,
    ``DELETED``) carrying ``obj``, or ``SYNC`` carrying the full listing in
    ``items`` after an initial list or a re-list.
    """

    kind: str
    event_type: str
    obj: Any = None
    items: tuple[Any, ...] = field(default_factory=tuple)


class Informer:
    """List-then-watch one resource kind and forward every change to a sink.

    1. Lists the kind, retrying transient failures with jittered exponential
       backoff (1 s to 30 s).  ``401``/``403`` on this first list is fatal:
       ``fatal_error`` is set and the loop exits.
    2. Hands the listing to the sink as a ``SYNC`` notification.
    3. Watches from the listing's ``resourceVersion``, forwarding each event.
    4. On ``410 Gone`` re-lists and resumes; any other failure backs off and
       reconnects from the last seen ``resourceVersion``.

    The informer never touches the cache itself; the sink is expected to be
    :meth:`EventDispatcher.submit`.
    """

    def __init__(
        self,
        kind_api: KindApi,
        sink: Callable[[Notification], None],
        namespace: str = "",
        label_selector: str = "",
        watch_timeout_seconds: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind_api.kind
        self.sink = sink
        self.namespace = namespace
        self.label_selector = label_selector
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._list_fn, self._scope = kind_api.lister(namespace)

        self.listed = threading.Event()
        self.fatal_error: WatchSubscriptionError | None = None
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs = dict(self._scope)
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        return kwargs

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list(self) -> str | None:
        """List the kind, hand the snapshot to the sink, and return its resourceVersion."""
        listing = self._list_fn(**self._list_kwargs())
        items = tuple(getattr(listing, "items", None) or [])
        self.sink(Notification(kind=self.kind, event_type=SYNC, items=items))
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _backoff_wait(self, stop: threading.Event, timeout: float) -> None:
        """Sleep up to *timeout* seconds, waking early on shutdown or :meth:`request_stop`."""
        deadline = time.monotonic() + timeout
        while not self._should_stop(stop):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._external_stop.wait(timeout=min(remaining, 0.5))

    def _list_with_retry(self, stop: threading.Event, *, denied_is_fatal: bool) -> str | None:
        """List until it succeeds and return the resourceVersion; ``None`` on stop or fatal error."""
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self.listed.set()
                self.logger.info(
                    "Listed %s; watching from resourceVersion %s", self.kind, resource_version
                )
                return resource_version
            except ApiException as exc:
                if denied_is_fatal and exc.status in {401, 403}:
                    self.fatal_error = WatchSubscriptionError(
                        f"Kubernetes API denied listing {self.kind} (status={exc.status}). "
                        "Check RBAC and service account permissions."
                    )
                    self.logger.error("%s", self.fatal_error)
                    return None
                self.logger.exception("Listing %s failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error while listing %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            self._backoff_wait(stop, jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return None

    def run(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        resource_version = self._list_with_retry(stop, denied_is_fatal=True)
        if self.fatal_error is not None or self._should_stop(stop):
            return

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self._list_kwargs(),
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if obj is None or event_type not in {"ADDED", "MODIFIED", "DELETED"}:
                        continue
                    _, _, observed_version = object_identity(obj)
                    if observed_version:
                        resource_version = observed_version
                    self.sink(Notification(kind=self.kind, event_type=event_type, obj=obj))
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away.  A fresh
                # listing replaces the cache so no change in the gap is lost.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    resource_version = self._list_with_retry(stop, denied_is_fatal=False)
                    backoff_seconds = 1
                    continue
                self.logger.exception(
                    "Kubernetes API watch error for %s (status=%s)", self.kind, exc.status
                )
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._backoff_wait(stop, jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._backoff_wait(stop, jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


class EventDispatcher:
    """The single consumer of informer notifications.

    It is the only writer of the :class:`ResourceCache` and the only place
    watch events turn into Secret keys on the work queue:

    * Secret added/modified: cached, key enqueued.
    * Secret deleted: evicted, key enqueued once so the reconciler observes
      the absence (and leaves existing annotations alone).
    * Target added/modified/deleted: cache entry replaced or evicted, nothing
      enqueued.
    * ``SYNC``: the kind's cache contents are replaced by the listing; for
      Secrets every listed key and every vanished key is enqueued.
    """

    def __init__(
        self,
        cache: ResourceCache,
        work_queue: RateLimitingQueue[SecretKey],
        dependency_annotation: str,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cache = cache
        self.work_queue = work_queue
        self.dependency_annotation = dependency_annotation
        self.logger = logger or logging.getLogger(__name__)
        self._inbox: queue.Queue[Notification | None] = queue.Queue()
        self._synced_kinds: set[str] = set()
        self._synced_lock = threading.Lock()

    def submit(self, notification: Notification) -> None:
        self._inbox.put(notification)

    def close(self) -> None:
        self._inbox.put(None)

    def has_synced(self, kinds: set[str]) -> bool:
        with self._synced_lock:
            return kinds <= self._synced_kinds

    def run(self) -> None:
        """Apply notifications in arrival order until :meth:`close` is called."""
        while True:
            notification = self._inbox.get()
            if notification is None:
                return
            try:
                self.handle(notification)
            except Exception:
                self.logger.exception(
                    "Failed to apply %s %s notification", notification.kind, notification.event_type
                )

    def handle(self, notification: Notification) -> None:
        if notification.kind == "Secret":
            self._handle_secret(notification)
        else:
            self._handle_target(notification)

        if notification.event_type == SYNC:
            with self._synced_lock:
                self._synced_kinds.add(notification.kind)

    def _handle_secret(self, notification: Notification) -> None:
        if notification.event_type == SYNC:
            secrets = [
                secret
                for secret in (secret_from_object(item) for item in notification.items)
                if secret is not None
            ]
            removed = self.cache.replace_secrets(secrets)
            for key in [secret.key for secret in secrets] + sorted(removed):
                self.work_queue.add(key)
            self.logger.info(
                "Synced %d Secret(s); %d disappeared since the previous listing",
                len(secrets),
                len(removed),
            )
            return

        if notification.event_type == "DELETED":
            namespace, name, _ = object_identity(notification.obj)
            if not namespace or not name:
                return
            key = SecretKey(namespace, name)
            self.cache.delete_secret(key)
            self.logger.info("Secret %s deleted", key, extra={"secret": str(key)})
            self.work_queue.add(key)
            return

        secret = secret_from_object(notification.obj)
        if secret is None:
            return
        self.cache.upsert_secret(secret)
        self.work_queue.add(secret.key)

    def _handle_target(self, notification: Notification) -> None:
        kind = notification.kind
        if notification.event_type == SYNC:
            targets = []
            for item in notification.items:
                target = target_from_object(kind, item, self.dependency_annotation)
                if target is None:
                    continue
                self._report_declaration_error(target)
                targets.append(target)
            removed = self.cache.replace_targets(kind, targets)
            self.logger.info(
                "Synced %d %s target(s); %d disappeared since the previous listing",
                len(targets),
                kind,
                len(removed),
            )
            return

        if notification.event_type == "DELETED":
            namespace, name, _ = object_identity(notification.obj)
            if namespace and name:
                self.cache.delete_target(TargetKey(namespace, name, kind))
            return

        target = target_from_object(kind, notification.obj, self.dependency_annotation)
        if target is None:
            return
        self._report_declaration_error(target)
        self.cache.upsert_target(target)

    def _report_declaration_error(self, target: TargetRef) -> None:
        if target.declaration_error is None:
            return
        METRICS.malformed_declarations_total.inc()
        self.logger.warning(
            "Ignoring malformed %s annotation on %s: %s",
            self.dependency_annotation,
            target.key,
            target.declaration_error,
            extra={"target": str(target.key)},
        )
