"""
Worker threads that drain the job queues.

A ``WorkerPool`` runs ``concurrency`` threads against one queue, each
claiming and running one job at a time. ``WorkerRuntime`` owns the pools
for both queues plus a maintenance thread that expires timed-out leases
and prunes old jobs. The entry point builds it and starts/stops it with
the process.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from src.cli_session import SessionManager
from src.config import Config
from src.structured_logging import PipelineLogger
from .handlers import MailboxFactory, ScanJobHandler, UnsubscribeJobHandler
from .queue import JobQueue, SCAN_QUEUE, UNSUBSCRIBE_QUEUE

logger = logging.getLogger(__name__)

JobHandler = Callable[[Dict[str, Any]], Any]


class WorkerPool:
    """Fixed pool of threads processing one queue."""

    def __init__(
        self,
        queue: JobQueue,
        queue_name: str,
        handler: JobHandler,
        concurrency: int = 1,
        poll_interval: float = 1.0
    ):
        self.queue = queue
        self.queue_name = queue_name
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self.log = PipelineLogger(f"worker.{queue_name}")

    def run_once(self) -> bool:
        """Claim and process a single job. False when nothing was eligible."""
        job = self.queue.claim(self.queue_name)
        if job is None:
            return False

        with self.log.scoped_context({'job_id': job.id, 'attempt': job.attempts_made}):
            try:
                self.handler(job.payload)
            except Exception as e:
                self.log.log_exception(e)
                self.queue.fail(job, e)
            else:
                self.queue.complete(job)
                self.log.info("Job completed")
        return True

    def _loop(self):
        while not self._stop.is_set():
            try:
                processed = self.run_once()
            except Exception as e:
                # Store unavailable; keep the thread alive and poll again
                self.log.log_exception(e)
                processed = False
            if not processed:
                self._stop.wait(self.poll_interval)

    def start(self):
        self._stop.clear()
        for index in range(self.concurrency):
            thread = threading.Thread(
                target=self._loop,
                name=f"{self.queue_name}-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {self.concurrency} {self.queue_name} workers")

    def stop(self, timeout: Optional[float] = None):
        """Signal the threads and wait for in-progress jobs to return."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []


class WorkerRuntime:
    """Owns the worker pools and the queue maintenance loop."""

    def __init__(self, queue: JobQueue, pools: List[WorkerPool],
                 maintenance_interval: float = 5.0):
        self.queue = queue
        self.pools = pools
        self.maintenance_interval = maintenance_interval
        self._stop = threading.Event()
        self._maintenance_thread: Optional[threading.Thread] = None
        self.log = PipelineLogger("runtime")

    @classmethod
    def build(
        cls,
        session_manager: SessionManager,
        mailbox_factory: MailboxFactory,
        queue: Optional[JobQueue] = None
    ) -> 'WorkerRuntime':
        """Wire the default scan and unsubscribe pools from Config."""
        queue = queue or JobQueue(session_manager)
        poll_interval = Config.worker_poll_interval()

        scan_handler = ScanJobHandler(session_manager, mailbox_factory)
        unsubscribe_handler = UnsubscribeJobHandler(
            session_manager, mailbox_factory,
            timeout=Config.request_timeout(), user_agent=Config.user_agent(),
        )
        queue.register_expiry_hook(SCAN_QUEUE, scan_handler.on_expired)
        queue.register_expiry_hook(UNSUBSCRIBE_QUEUE, unsubscribe_handler.on_expired)

        pools = [
            WorkerPool(queue, SCAN_QUEUE, scan_handler,
                       concurrency=Config.scan_concurrency(), poll_interval=poll_interval),
            WorkerPool(queue, UNSUBSCRIBE_QUEUE, unsubscribe_handler,
                       concurrency=Config.unsubscribe_concurrency(), poll_interval=poll_interval),
        ]
        return cls(queue, pools, maintenance_interval=max(poll_interval, 1.0))

    def run_maintenance(self):
        expired = self.queue.expire_stale()
        pruned = self.queue.prune()
        if expired or pruned:
            self.log.info("Queue maintenance", {'expired': expired, 'pruned': pruned})

    def _maintenance_loop(self):
        while not self._stop.is_set():
            try:
                self.run_maintenance()
            except Exception as e:
                self.log.log_exception(e)
            self._stop.wait(self.maintenance_interval)

    def start(self):
        self._stop.clear()
        for pool in self.pools:
            pool.start()
        self._maintenance_thread = threading.Thread(
            target=self._maintenance_loop, name="queue-maintenance", daemon=True
        )
        self._maintenance_thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        for pool in self.pools:
            pool.stop(timeout)
        if self._maintenance_thread is not None:
            self._maintenance_thread.join(timeout)
            self._maintenance_thread = None
