"""Job publishing onto the arq queue."""

import logging
from abc import ABC, abstractmethod
from typing import Any

from arq.connections import ArqRedis
from redis.exceptions import RedisError

from receipt_pipeline.queue.payloads import sign_payload
from receipt_pipeline.shared.errors import QueueUnavailableError

logger = logging.getLogger(__name__)

PROCESS_RECEIPT = "process_receipt"
PROCESS_BATCH_FILE = "process_batch_file"


class JobQueue(ABC):
    """Durable task queue with at-least-once delivery."""

    @abstractmethod
    async def enqueue(self, function_name: str, payload: dict[str, Any]) -> str:
        """Queue ``payload`` for the worker function ``function_name``.

        Returns:
            Job identifier

        Raises:
            QueueUnavailableError: If the queue did not accept the job
        """


class ArqJobQueue(JobQueue):
    """Signs payloads and enqueues them on an arq Redis pool."""

    def __init__(self, pool: ArqRedis, secret: str) -> None:
        self.pool = pool
        self.secret = secret

    async def enqueue(self, function_name: str, payload: dict[str, Any]) -> str:
        signature = sign_payload(payload, self.secret)
        try:
            job = await self.pool.enqueue_job(function_name, payload, signature)
        except (RedisError, OSError) as e:
            raise QueueUnavailableError(f"Failed to enqueue {function_name}: {e}") from e

        # arq returns None when a job with the same id is already queued
        if job is None:
            raise QueueUnavailableError(f"Queue rejected {function_name} job")

        logger.info(f"Enqueued {function_name} job {job.job_id}")
        return job.job_id
