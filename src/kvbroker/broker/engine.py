"""
Broker engine: named job queues built from primitive store operations.

Per queue `name` the store holds:
- queue:{name}            pending ids, scored by priority_score (lowest first)
- queue:{name}:delayed    delayed/retrying ids, scored by run_at (ms)
- queue:{name}:active     in-flight ids, scored by deadline (ms)
- queue:{name}:failed     list of failed job JSON, newest first, bounded
- queue:{name}:jobs       hash id -> job JSON
- queue:{name}:metrics    hash with total/processed/failed counters

Job lifecycle:
    pending -> active -> completed
    active -> retrying (delayed) -> pending       while attempts < max_attempts
    active -> failed                              once attempts >= max_attempts
    delayed -> pending                            when run_at elapses

A job id is in at most one of the sorted sets/failed list at a time. Moves
between collections are issued as one atomic batch, except the pop from
pending (bzpopmin) which precedes the add to active, and the reaper, which
claims an expired id by removing it from active before moving it.

Only one worker loop may run per queue; the engine is the single writer of
a queue's state.
"""

import asyncio
import inspect
import itertools
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, NamedTuple, Optional

import structlog
from pydantic import ValidationError

from kvbroker.broker.models import (
    BrokerEvent,
    Channels,
    Job,
    JobStatus,
    QueueConfig,
    QueueStats,
)
from kvbroker.broker.pubsub import MessageHandler, PubSub
from kvbroker.config import Settings
from kvbroker.exceptions import (
    InvalidQueueNameError,
    QueueNotFoundError,
    WorkerAlreadyRegisteredError,
)
from kvbroker.monitoring.metrics import job_duration_seconds, jobs_total
from kvbroker.store.adapter import StoreAdapter

logger = structlog.get_logger(__name__)

QUEUE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,63}$")

# Processor called with (data, job); may return a value or an awaitable
JobProcessor = Callable[[Any, Job], Any]

# Delayed jobs promoted per worker iteration
PROMOTE_BATCH_SIZE = 100

_sequence = itertools.count()


def generate_job_id(now_ms: int) -> str:
    """job_<ms>_<6-digit sequence><6 hex>: sortable within one millisecond."""
    return f"job_{now_ms}_{next(_sequence) % 1_000_000:06d}{secrets.token_hex(3)}"


def compute_priority_score(created_at_ms: int, priority: int) -> float:
    """Lower score dequeues first; each priority step outranks one second of age."""
    return float(created_at_ms - priority * 1000)


class QueueKeys(NamedTuple):
    pending: str
    delayed: str
    active: str
    failed: str
    jobs: str
    metrics: str


def queue_keys(name: str) -> QueueKeys:
    base = f"queue:{name}"
    return QueueKeys(
        pending=base,
        delayed=f"{base}:delayed",
        active=f"{base}:active",
        failed=f"{base}:failed",
        jobs=f"{base}:jobs",
        metrics=f"{base}:metrics",
    )


@dataclass
class Worker:
    """Polling loop state for one queue."""

    queue: str
    config: QueueConfig
    processor: JobProcessor
    active: bool = True
    in_flight: dict[str, asyncio.Task] = field(default_factory=dict)
    task: Optional[asyncio.Task] = None
    last_reap: float = float("-inf")


class Broker:
    """
    Queue lifecycle, workers, retries and lifecycle events.

    Args:
        store: Store adapter (errors arrive as neutral defaults)
        pubsub: Fan-out used for lifecycle events and application channels
        settings: Queue defaults and worker timings
        clock: Returns epoch seconds (injectable for tests)
    """

    def __init__(
        self,
        store: StoreAdapter,
        pubsub: PubSub,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.pubsub = pubsub
        self.settings = settings
        self._clock = clock
        self._queues: dict[str, QueueConfig] = {}
        self._workers: dict[str, Worker] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def queues(self) -> dict[str, QueueConfig]:
        return dict(self._queues)

    def has_worker(self, queue_name: str) -> bool:
        return queue_name in self._workers

    def _config_for(self, queue_name: str) -> QueueConfig:
        config = self._queues.get(queue_name)
        if config is None:
            raise QueueNotFoundError(queue_name)
        return config

    # --- queues ---

    async def create_queue(
        self,
        name: str,
        config: Optional[QueueConfig] = None,
    ) -> Optional[QueueConfig]:
        """
        Register a queue and initialise its counters.

        Returns None when the name is invalid or the store rejects the
        initialisation. Creating an existing queue returns its current config.
        """
        if not isinstance(name, str) or not QUEUE_NAME_PATTERN.match(name):
            logger.warning("Rejected invalid queue name", queue=name)
            return None

        if name in self._queues:
            return self._queues[name]

        config = config or QueueConfig(
            max_retries=self.settings.QUEUE_DEFAULT_MAX_RETRIES,
            timeout=self.settings.QUEUE_DEFAULT_TIMEOUT,
            concurrency=self.settings.QUEUE_DEFAULT_CONCURRENCY,
        )

        keys = queue_keys(name)
        # HINCRBY by 0 creates missing counters without resetting existing ones
        batch = self.store.multi()
        for counter in ("total", "processed", "failed"):
            batch.hincrby(keys.metrics, counter, 0)
        results = await self.store.exec(batch)
        if not all(result.ok for result in results):
            logger.error("Failed to create queue", queue=name)
            return None

        self._queues[name] = config
        logger.info(
            "Queue created",
            queue=name,
            max_retries=config.max_retries,
            timeout=config.timeout,
            concurrency=config.concurrency,
        )
        return config

    async def add_job(
        self,
        queue_name: str,
        data: Any,
        delay: float = 0,
        priority: int = 0,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Enqueue a job; returns its id, or None if the store rejected it.

        Args:
            queue_name: Registered queue
            data: JSON-serializable payload handed to the processor
            delay: Seconds before the job becomes pending
            priority: Higher runs sooner
            max_attempts: Defaults to the queue's max_retries
            timeout: Seconds; defaults to the queue's timeout
            metadata: Opaque caller data stored with the job

        Raises:
            QueueNotFoundError: If the queue was never created
        """
        config = self._config_for(queue_name)
        keys = queue_keys(queue_name)
        now_ms = self._now_ms()

        job = Job(
            id=generate_job_id(now_ms),
            queue=queue_name,
            data=data,
            max_attempts=max_attempts or config.max_retries,
            priority=priority,
            priority_score=compute_priority_score(now_ms, priority),
            timeout=timeout or config.timeout,
            created_at=now_ms,
            metadata=metadata or {},
        )
        if delay > 0:
            job.status = JobStatus.DELAYED
            job.run_at = now_ms + int(delay * 1000)

        batch = self.store.multi().hset(keys.jobs, job.id, job.model_dump_json())
        if job.status == JobStatus.DELAYED:
            batch.zadd(keys.delayed, {job.id: job.run_at})
        else:
            batch.zadd(keys.pending, {job.id: job.priority_score})
        batch.hincrby(keys.metrics, "total", 1)

        results = await self.store.exec(batch)
        if not all(result.ok for result in results):
            logger.error("Failed to enqueue job", queue=queue_name, job_id=job.id)
            return None

        jobs_total.labels(queue=queue_name, outcome="enqueued").inc()
        logger.info(
            "Job added",
            queue=queue_name,
            job_id=job.id,
            priority=priority,
            delay=delay,
        )
        await self._publish_event(BrokerEvent.JOB_ADDED, queue_name, job.id, now_ms)
        return job.id

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        """Load a job record; None if absent or unreadable."""
        raw = await self.store.hget(queue_keys(queue_name).jobs, job_id)
        if raw is None:
            return None
        try:
            return Job.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Unreadable job record", queue=queue_name, job_id=job_id, error=str(e))
            return None

    # --- workers ---

    def process_queue(self, queue_name: str, processor: JobProcessor) -> Worker:
        """
        Start the single worker loop for a queue.

        Raises:
            QueueNotFoundError: If the queue was never created
            WorkerAlreadyRegisteredError: If the queue already has a worker
        """
        config = self._config_for(queue_name)
        if queue_name in self._workers:
            raise WorkerAlreadyRegisteredError(queue_name)

        worker = Worker(queue=queue_name, config=config, processor=processor)
        self._workers[queue_name] = worker
        worker.task = asyncio.create_task(self._run_worker(worker))
        logger.info("Worker started", queue=queue_name, concurrency=config.concurrency)
        return worker

    async def _run_worker(self, worker: Worker) -> None:
        while worker.active:
            try:
                await self._tick(worker)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Queue worker error",
                    queue=worker.queue,
                    error=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(self.settings.QUEUE_ERROR_BACKOFF)
        logger.info("Worker stopped", queue=worker.queue)

    async def _tick(self, worker: Worker) -> None:
        """One worker iteration: promote, reap, then dispatch at most one job."""
        await self.promote_delayed(worker.queue)

        loop = asyncio.get_running_loop()
        if (
            self.settings.QUEUE_REAP_ORPHANS
            and loop.time() - worker.last_reap >= self.settings.QUEUE_REAPER_INTERVAL
        ):
            worker.last_reap = loop.time()
            await self.reap_orphans(worker.queue, worker)

        if len(worker.in_flight) >= worker.config.concurrency:
            await asyncio.sleep(self.settings.QUEUE_CAPACITY_WAIT)
            return

        poll = self.settings.QUEUE_POLL_INTERVAL
        started = loop.time()
        popped = await self.store.bzpopmin(queue_keys(worker.queue).pending, poll)
        if popped is None:
            # An immediate empty answer means the store is failing
            if loop.time() - started < poll / 2:
                await asyncio.sleep(poll)
            return

        job_id, _ = popped
        if not worker.active:
            # Paused while blocked on the pop: put the job back
            await self.store.zadd(queue_keys(worker.queue).pending, {job_id: popped[1]})
            return
        await self._dispatch(worker, job_id, popped[1])

    async def _dispatch(self, worker: Worker, job_id: str, score: float) -> None:
        keys = queue_keys(worker.queue)
        raw = await self.store.hget(keys.jobs, job_id)
        if raw is None:
            if await self.store.hexists(keys.jobs, job_id):
                # Record present but the read failed
                logger.warning("Job record unavailable, requeueing", queue=worker.queue, job_id=job_id)
                await self._requeue_popped(worker, job_id, score)
            else:
                logger.warning("Dropping job without a record", queue=worker.queue, job_id=job_id)
            return
        try:
            job = Job.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Discarding unreadable job record", queue=worker.queue, job_id=job_id, error=str(e))
            await self.store.hdel(keys.jobs, job_id)
            return

        now_ms = self._now_ms()
        job.attempts += 1
        job.status = JobStatus.ACTIVE
        job.started_at = now_ms
        deadline = now_ms + int(job.timeout * 1000)

        batch = (
            self.store.multi()
            .hset(keys.jobs, job.id, job.model_dump_json())
            .zadd(keys.active, {job.id: deadline})
        )
        results = await self.store.exec(batch)
        if not all(result.ok for result in results):
            logger.warning("Could not mark job active, requeueing", queue=worker.queue, job_id=job.id)
            await self._requeue_popped(worker, job.id, score)
            return

        worker.in_flight[job.id] = asyncio.create_task(self._execute(worker, job))
        logger.debug(
            "Job dispatched",
            queue=worker.queue,
            job_id=job.id,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
        )

    async def _requeue_popped(self, worker: Worker, job_id: str, score: float) -> None:
        keys = queue_keys(worker.queue)
        await self.store.exec(
            self.store.multi().zrem(keys.active, job_id).zadd(keys.pending, {job_id: score})
        )
        await asyncio.sleep(self.settings.QUEUE_ERROR_BACKOFF)

    async def _execute(self, worker: Worker, job: Job) -> None:
        started = time.perf_counter()
        try:
            await asyncio.wait_for(
                _call_processor(worker.processor, job), timeout=job.timeout
            )
        except asyncio.TimeoutError:
            await self._on_failure(job, f"Job timed out after {job.timeout}s", time.perf_counter() - started)
        except Exception as e:
            await self._on_failure(job, str(e) or type(e).__name__, time.perf_counter() - started)
        else:
            await self._on_success(job, time.perf_counter() - started)
        finally:
            worker.in_flight.pop(job.id, None)

    def retry_delay(self, attempts: int) -> float:
        """Seconds before retry: min(max, 2^attempts * base)."""
        return min(
            self.settings.JOB_RETRY_MAX_SECONDS,
            (2**attempts) * self.settings.JOB_RETRY_BASE_SECONDS,
        )

    async def _on_success(self, job: Job, duration: float) -> None:
        keys = queue_keys(job.queue)
        batch = (
            self.store.multi()
            .zrem(keys.active, job.id)
            .hdel(keys.jobs, job.id)
            .hincrby(keys.metrics, "processed", 1)
        )
        await self.store.exec(batch)

        jobs_total.labels(queue=job.queue, outcome="completed").inc()
        job_duration_seconds.labels(queue=job.queue, success="true").observe(duration)
        logger.info(
            "Job completed",
            queue=job.queue,
            job_id=job.id,
            attempts=job.attempts,
            duration_ms=int(duration * 1000),
        )
        await self._publish_event(
            BrokerEvent.JOB_COMPLETED,
            job.queue,
            job.id,
            self._now_ms(),
            duration=int(duration * 1000),
        )

    async def _on_failure(self, job: Job, error: str, duration: float) -> None:
        job_duration_seconds.labels(queue=job.queue, success="false").observe(duration)
        job.error = error
        if job.attempts < job.max_attempts:
            await self._schedule_retry(job)
        else:
            await self._fail_permanently(job, queue_keys(job.queue).active)

    async def _schedule_retry(self, job: Job) -> None:
        keys = queue_keys(job.queue)
        delay = self.retry_delay(job.attempts)
        job.status = JobStatus.RETRYING
        job.run_at = self._now_ms() + int(delay * 1000)

        batch = (
            self.store.multi()
            .hset(keys.jobs, job.id, job.model_dump_json())
            .zrem(keys.active, job.id)
            .zadd(keys.delayed, {job.id: job.run_at})
        )
        await self.store.exec(batch)

        jobs_total.labels(queue=job.queue, outcome="retried").inc()
        logger.warning(
            "Job scheduled for retry",
            queue=job.queue,
            job_id=job.id,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            retry_in=delay,
            error=job.error,
        )
        await self._publish_event(
            BrokerEvent.JOB_RETRYING,
            job.queue,
            job.id,
            self._now_ms(),
            attempts=job.attempts,
            retry_in=delay,
        )

    async def _fail_permanently(self, job: Job, source_key: str) -> None:
        keys = queue_keys(job.queue)
        job.status = JobStatus.FAILED
        job.completed_at = self._now_ms()

        batch = (
            self.store.multi()
            .zrem(source_key, job.id)
            .hdel(keys.jobs, job.id)
            .lpush(keys.failed, job.model_dump_json())
            .ltrim(keys.failed, 0, self.settings.QUEUE_FAILED_LIST_MAX - 1)
            .hincrby(keys.metrics, "failed", 1)
        )
        await self.store.exec(batch)

        jobs_total.labels(queue=job.queue, outcome="failed").inc()
        logger.error(
            "Job failed permanently",
            queue=job.queue,
            job_id=job.id,
            attempts=job.attempts,
            error=job.error,
        )
        await self._publish_event(
            BrokerEvent.JOB_FAILED,
            job.queue,
            job.id,
            job.completed_at,
            error=job.error,
            attempts=job.attempts,
        )

    async def promote_delayed(self, queue_name: str) -> int:
        """Move due delayed jobs back to pending with their original priority score."""
        keys = queue_keys(queue_name)
        due = await self.store.zrange_by_score(
            keys.delayed, 0, self._now_ms(), 0, PROMOTE_BATCH_SIZE
        )
        promoted = 0
        for job_id in due:
            job = await self.get_job(queue_name, job_id)
            if job is None:
                await self.store.zrem(keys.delayed, job_id)
                continue
            job.status = JobStatus.PENDING
            batch = (
                self.store.multi()
                .zrem(keys.delayed, job_id)
                .zadd(keys.pending, {job_id: job.priority_score})
                .hset(keys.jobs, job_id, job.model_dump_json())
            )
            results = await self.store.exec(batch)
            if all(result.ok for result in results):
                promoted += 1
        if promoted:
            logger.debug("Promoted delayed jobs", queue=queue_name, count=promoted)
        return promoted

    async def reap_orphans(self, queue_name: str, worker: Optional[Worker] = None) -> int:
        """
        Requeue active jobs whose deadline elapsed without completion.

        Jobs still running in this process are left alone. A job is only
        moved once its removal from the active set succeeds, so a job that
        finished or failed meanwhile is not requeued a second time. Jobs
        with no attempts left are failed.
        """
        keys = queue_keys(queue_name)
        worker = worker or self._workers.get(queue_name)
        expired = await self.store.zrange_by_score(keys.active, 0, self._now_ms())
        running = worker.in_flight if worker is not None else {}
        reaped = 0
        for job_id in expired:
            if job_id in running:
                continue
            job = await self.get_job(queue_name, job_id)
            if job is None:
                if not await self.store.hexists(keys.jobs, job_id):
                    await self.store.zrem(keys.active, job_id)
                continue
            if job_id in running or not await self.store.zrem(keys.active, job_id):
                continue

            job.error = "Job deadline exceeded without completion"
            if job.attempts >= job.max_attempts:
                await self._fail_permanently(job, keys.active)
            else:
                job.status = JobStatus.PENDING
                batch = (
                    self.store.multi()
                    .zadd(keys.pending, {job_id: job.priority_score})
                    .hset(keys.jobs, job_id, job.model_dump_json())
                )
                await self.store.exec(batch)
            reaped += 1
            jobs_total.labels(queue=queue_name, outcome="reaped").inc()

        if reaped:
            logger.warning("Reaped orphaned active jobs", queue=queue_name, count=reaped)
        return reaped

    # --- management ---

    async def get_queue_stats(self, queue_name: str) -> QueueStats:
        """
        Raises:
            QueueNotFoundError: If the queue was never created
        """
        self._config_for(queue_name)
        keys = queue_keys(queue_name)
        metrics = await self.store.hgetall(keys.metrics)
        return QueueStats(
            name=queue_name,
            pending=await self.store.zcard(keys.pending),
            delayed=await self.store.zcard(keys.delayed),
            active=await self.store.zcard(keys.active),
            failed=await self.store.llen(keys.failed),
            total=int(metrics.get("total", 0)),
            processed_total=int(metrics.get("processed", 0)),
            failed_total=int(metrics.get("failed", 0)),
            worker="active" if queue_name in self._workers else "inactive",
        )

    async def get_all_queue_stats(self) -> dict[str, QueueStats]:
        return {name: await self.get_queue_stats(name) for name in list(self._queues)}

    async def retry_failed_jobs(self, queue_name: str, count: int = 10) -> int:
        """Move up to `count` oldest failed jobs back to pending with attempts reset."""
        self._config_for(queue_name)
        keys = queue_keys(queue_name)
        retried = 0
        for _ in range(count):
            raw = await self.store.rpop(keys.failed)
            if raw is None:
                break
            try:
                job = Job.model_validate_json(raw)
            except ValidationError as e:
                logger.error("Discarding unreadable failed job", queue=queue_name, error=str(e))
                continue

            now_ms = self._now_ms()
            job.status = JobStatus.PENDING
            job.attempts = 0
            job.error = None
            job.run_at = None
            job.completed_at = None
            job.priority_score = compute_priority_score(now_ms, job.priority)
            batch = (
                self.store.multi()
                .hset(keys.jobs, job.id, job.model_dump_json())
                .zadd(keys.pending, {job.id: job.priority_score})
            )
            await self.store.exec(batch)
            retried += 1
            logger.info("Retrying failed job", queue=queue_name, job_id=job.id)
        return retried

    async def purge_queue(self, queue_name: str) -> int:
        """
        Delete every collection and counter of a queue; returns keys removed.

        Raises:
            InvalidQueueNameError: If the name could never be a queue
        """
        if not QUEUE_NAME_PATTERN.match(queue_name):
            raise InvalidQueueNameError(queue_name)
        removed = await self.store.delete(*queue_keys(queue_name))
        logger.info("Queue purged", queue=queue_name, keys_removed=removed)
        return removed

    def pause_queue(self, queue_name: str) -> bool:
        """
        Stop a queue's worker after its current iteration.

        In-flight jobs are left to finish. Returns False if no worker ran.
        """
        worker = self._workers.pop(queue_name, None)
        if worker is None:
            return False
        worker.active = False
        logger.info("Queue paused", queue=queue_name, in_flight=len(worker.in_flight))
        return True

    # --- pub/sub ---

    async def publish(
        self,
        channel: str,
        data: Any,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        return await self.pubsub.publish(channel, data, metadata)

    async def subscribe(self, channel: str, handler: MessageHandler) -> bool:
        return await self.pubsub.subscribe(channel, handler)

    async def unsubscribe(self, channel: str, handler: Optional[MessageHandler] = None) -> None:
        await self.pubsub.unsubscribe(channel, handler)

    async def _publish_event(
        self,
        event: BrokerEvent,
        queue_name: str,
        job_id: str,
        timestamp: Optional[int],
        **extra: Any,
    ) -> None:
        await self.pubsub.publish(
            Channels.SYSTEM,
            {
                "type": event.value,
                "queue": queue_name,
                "job_id": job_id,
                "timestamp": timestamp,
                **extra,
            },
        )

    # --- shutdown ---

    async def shutdown(self) -> None:
        """
        Halt every worker loop, give in-flight jobs QUEUE_SHUTDOWN_GRACE
        seconds to finish, cancel the rest and unsubscribe all channels.

        Cancelled jobs stay in their active set; the reaper requeues them on
        the next start.
        """
        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            worker.active = False

        grace = self.settings.QUEUE_SHUTDOWN_GRACE
        loops = [worker.task for worker in workers if worker.task is not None]
        if loops:
            _, still_running = await asyncio.wait(loops, timeout=grace)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*loops, return_exceptions=True)

        in_flight = [task for worker in workers for task in worker.in_flight.values()]
        if in_flight:
            _, unfinished = await asyncio.wait(in_flight, timeout=grace)
            for task in unfinished:
                task.cancel()
            await asyncio.gather(*in_flight, return_exceptions=True)
            if unfinished:
                logger.warning("Cancelled unfinished jobs at shutdown", count=len(unfinished))

        await self.pubsub.unsubscribe_all()
        logger.info("Broker shut down", workers=len(workers))


async def _call_processor(processor: JobProcessor, job: Job) -> Any:
    result = processor(job.data, job)
    if inspect.isawaitable(result):
        result = await result
    return result
