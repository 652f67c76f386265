from __future__ import annotations

import logging
import threading
import time

from kubernetes.client import AppsV1Api, CoreV1Api

from reloader.src.cache import ResourceCache
from reloader.src.config import ReloaderConfig, load_config
from reloader.src.informer import EventDispatcher, Informer, WatchSubscriptionError
from reloader.src.kube import PatchClient, kind_apis
from reloader.src.models import SecretKey
from reloader.src.reconciler import SecretReconciler
from reloader.src.workqueue import RateLimitingQueue


class SecretReloader:
    """Keep workload pod templates in step with the Secrets they declare.

    Threads, by role:

    ``informer-<kind>``
        One per watched kind (Secret plus each configured target kind).
        Lists then watches, forwarding notifications to the dispatcher.
    ``dispatcher``
        The single writer of the cache; turns Secret notifications into
        queue keys.
    ``worker-<n>``
        Pull Secret keys and run :class:`SecretReconciler` passes.  Started
        only once every kind's initial listing has been applied, so the
        first passes see a complete set of targets.

    The calling thread of :meth:`run_forever` performs the periodic resync,
    which re-enqueues every cached Secret so workloads that opted in after
    the last Secret change still converge.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        config: ReloaderConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

        self.cache = ResourceCache()
        self.work_queue: RateLimitingQueue[SecretKey] = RateLimitingQueue(
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
        )
        self.dispatcher = EventDispatcher(
            cache=self.cache,
            work_queue=self.work_queue,
            dependency_annotation=config.dependency_annotation,
        )
        self.reconciler = SecretReconciler(
            cache=self.cache,
            work_queue=self.work_queue,
            patch_client=PatchClient(core_api=core_api, apps_api=apps_api),
            fingerprint_prefix=config.fingerprint_prefix,
        )

        apis = kind_apis(core_api, apps_api)
        self.informers = [
            Informer(
                kind_api=apis["Secret"],
                sink=self.dispatcher.submit,
                namespace=config.namespace,
                label_selector=config.secret_selector,
                watch_timeout_seconds=config.watch_timeout_seconds,
            )
        ] + [
            Informer(
                kind_api=apis[kind],
                sink=self.dispatcher.submit,
                namespace=config.namespace,
                label_selector=config.target_selector,
                watch_timeout_seconds=config.watch_timeout_seconds,
            )
            for kind in config.target_kinds
        ]

        self.ready = threading.Event()
        self._external_stop = threading.Event()

    def request_stop(self) -> None:
        self._external_stop.set()
        for informer in self.informers:
            informer.request_stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _fatal_error(self) -> WatchSubscriptionError | None:
        for informer in self.informers:
            if informer.fatal_error is not None:
                return informer.fatal_error
        return None

    def _wait_for_cache_sync(self, stop: threading.Event) -> bool:
        """Block until every kind has been listed and applied; ``False`` on stop or fatal error."""
        kinds = {informer.kind for informer in self.informers}
        while not self._should_stop(stop):
            if self._fatal_error() is not None:
                return False
            if self.dispatcher.has_synced(kinds):
                return True
            stop.wait(timeout=0.1)
        return False

    def resync(self) -> int:
        """Enqueue every cached Secret and return how many keys were added."""
        keys = self.cache.secret_keys()
        for key in keys:
            self.work_queue.add(key)
        self.logger.debug("Periodic resync enqueued %d Secret(s)", len(keys))
        return len(keys)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run until *shutdown_event* is set or :meth:`request_stop` is called.

        Raises :class:`WatchSubscriptionError` when the API server denies the
        initial list of any watched kind; nothing is retried in that case.
        On shutdown the watches are interrupted, the queue is closed, and
        workers finish the pass they are in before the method returns.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        dispatcher_thread = threading.Thread(
            target=self.dispatcher.run, name="dispatcher", daemon=True
        )
        dispatcher_thread.start()
        informer_threads = [
            threading.Thread(
                target=informer.run,
                kwargs={"stop_event": stop},
                name=f"informer-{informer.kind}",
                daemon=True,
            )
            for informer in self.informers
        ]
        for thread in informer_threads:
            thread.start()

        worker_threads: list[threading.Thread] = []
        try:
            if not self._wait_for_cache_sync(stop):
                fatal = self._fatal_error()
                if fatal is not None:
                    raise fatal
                return

            for index in range(self.config.workers):
                thread = threading.Thread(
                    target=self.reconciler.run_worker, name=f"worker-{index}", daemon=True
                )
                thread.start()
                worker_threads.append(thread)
            self.ready.set()
            self.logger.info(
                "Caches synced; started %d worker(s) for kinds %s",
                len(worker_threads),
                ", ".join(informer.kind for informer in self.informers),
            )

            resync_period = self.config.resync_period_seconds
            next_resync = time.monotonic() + resync_period
            while not self._should_stop(stop):
                if resync_period > 0 and time.monotonic() >= next_resync:
                    self.resync()
                    next_resync = time.monotonic() + resync_period
                stop.wait(timeout=1.0)
        finally:
            self.ready.clear()
            self._shutdown(informer_threads, worker_threads, dispatcher_thread)

    def _shutdown(
        self,
        informer_threads: list[threading.Thread],
        worker_threads: list[threading.Thread],
        dispatcher_thread: threading.Thread,
    ) -> None:
        for informer in self.informers:
            informer.request_stop()
        self.work_queue.shut_down()

        deadline = time.monotonic() + self.config.shutdown_timeout_seconds
        for thread in worker_threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                self.logger.error(
                    "Worker %s did not finish within %ss of shutdown",
                    thread.name,
                    self.config.shutdown_timeout_seconds,
                )
        for thread in informer_threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))

        self.dispatcher.close()
        dispatcher_thread.join(timeout=max(0.0, deadline - time.monotonic()))
        self.logger.info("Reloader stopped")


def build_controller_from_env(core_api: CoreV1Api, apps_api: AppsV1Api) -> SecretReloader:
    """Construct a :class:`SecretReloader` from environment variables.

    See :func:`reloader.src.config.load_config` for the recognized variables.
    """
    return SecretReloader(core_api=core_api, apps_api=apps_api, config=load_config())
