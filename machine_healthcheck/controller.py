import asyncio
import logging
import signal
import threading
import time
from abc import ABC, abstractmethod

from kubernetes import client, watch

from .errors import RETRYABLE_ERRORS, ConflictError
from .k8s_client import (
    HEALTH_CHECK_PLURAL,
    HEALTHCHECKING_GROUP,
    HEALTHCHECKING_VERSION,
    KubernetesClusterClient,
    load_kube_config,
)
from .models import MachineHealthCheck
from .reconciler import MachineHealthCheckReconciler
from .settings import Settings
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)

WATCH_TIMEOUT_SECONDS = 300
WATCH_RESTART_DELAY = 5


async def process_next(queue: WorkQueue, reconciler: MachineHealthCheckReconciler) -> bool:
    """Reconcile one queued node; False once the queue is shut down"""
    node_name = await queue.get()
    if node_name is None:
        return False

    try:
        result = await asyncio.to_thread(reconciler.reconcile, node_name)
    except ConflictError as e:
        logger.warning(f"Conflict reconciling node {node_name}, requeuing: {e}")
        queue.add(node_name)
    except RETRYABLE_ERRORS as e:
        logger.warning(f"Error reconciling node {node_name}, requeuing: {e}")
        queue.add_rate_limited(node_name)
    except Exception:
        logger.exception(f"Unexpected error reconciling node {node_name}, requeuing")
        queue.add_rate_limited(node_name)
    else:
        queue.forget(node_name)
        if result.requeue_after is not None:
            logger.debug(f"Re-checking node {node_name} in {result.requeue_after}")
            queue.add_after(node_name, result.requeue_after.total_seconds())
    finally:
        queue.done(node_name)
    return True


async def worker(queue: WorkQueue, reconciler: MachineHealthCheckReconciler):
    while await process_next(queue, reconciler):
        pass


class EventWatcher(threading.Thread, ABC):
    """Streams watch events in a background thread until stopped"""

    def __init__(self, name: str, stopping: threading.Event):
        super().__init__(name=name, daemon=True)
        self.stopping = stopping

    @abstractmethod
    def stream(self, w: watch.Watch):
        ...

    @abstractmethod
    def handle(self, event_type: str, obj):
        ...

    def run(self):
        while not self.stopping.is_set():
            w = watch.Watch()
            try:
                for event in self.stream(w):
                    if self.stopping.is_set():
                        w.stop()
                        break
                    if event["type"] == "ERROR":
                        logger.warning(f"{self.name} watch returned an error event: {event['object']}")
                        break
                    self.handle(event["type"], event["object"])
            except Exception as e:
                logger.error(f"{self.name} watch failed: {e}")
                time.sleep(WATCH_RESTART_DELAY)


class NodeWatcher(EventWatcher):
    def __init__(self, loop: asyncio.AbstractEventLoop, queue: WorkQueue, stopping: threading.Event):
        super().__init__("node-watcher", stopping)
        self.loop = loop
        self.queue = queue
        self.v1 = client.CoreV1Api()

    def stream(self, w: watch.Watch):
        return w.stream(self.v1.list_node, timeout_seconds=WATCH_TIMEOUT_SECONDS)

    def handle(self, event_type: str, obj):
        if event_type == "DELETED":
            return
        self.loop.call_soon_threadsafe(self.queue.add, obj.metadata.name)


class HealthCheckWatcher(EventWatcher):
    """Fans machine health check changes out to the nodes they cover"""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        queue: WorkQueue,
        reconciler: MachineHealthCheckReconciler,
        namespace: str,
        stopping: threading.Event,
    ):
        super().__init__("machinehealthcheck-watcher", stopping)
        self.loop = loop
        self.queue = queue
        self.reconciler = reconciler
        self.namespace = namespace
        self.custom = client.CustomObjectsApi()

    def stream(self, w: watch.Watch):
        return w.stream(
            self.custom.list_namespaced_custom_object,
            HEALTHCHECKING_GROUP,
            HEALTHCHECKING_VERSION,
            self.namespace,
            HEALTH_CHECK_PLURAL,
            timeout_seconds=WATCH_TIMEOUT_SECONDS,
        )

    def handle(self, event_type: str, obj):
        if event_type == "DELETED":
            return
        health_check = MachineHealthCheck.from_dict(obj)
        for node_name in sorted(self.reconciler.map_health_check_to_nodes(health_check)):
            self.loop.call_soon_threadsafe(self.queue.add, node_name)


async def run(settings: Settings):
    load_kube_config()
    cluster = KubernetesClusterClient()
    reconciler = MachineHealthCheckReconciler(
        cluster,
        settings.namespace,
        budget_cooldown=settings.budget_cooldown,
        conflict_retry_attempts=settings.conflict_retry_attempts,
    )
    queue = WorkQueue()
    loop = asyncio.get_running_loop()

    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    stopping = threading.Event()
    watchers = [
        NodeWatcher(loop, queue, stopping),
        HealthCheckWatcher(loop, queue, reconciler, settings.namespace, stopping),
    ]
    for w in watchers:
        w.start()

    workers = [asyncio.create_task(worker(queue, reconciler)) for _ in range(settings.workers)]
    logger.info(f"Started {settings.workers} workers watching namespace {settings.namespace}")

    await stop.wait()
    logger.info("Shutting down, waiting for in-flight reconciliations")
    stopping.set()
    queue.shutdown()
    await asyncio.gather(*workers)


def main():
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print("🚑 Machine Health Check Controller Started")
    asyncio.run(run(settings))
    print("👋 Machine Health Check Controller stopped")


if __name__ == "__main__":
    main()
