"""Client-side status polling.

Progress is never pushed by the server. A poller asks for the status on a
fixed interval and synthesizes a progress percentage and stage label from
what it has seen so far. It stops on a terminal status or when the polling
window runs out; on expiry the caller should switch to manual entry, even
though the job may still finish server-side.

    uploading -> queued -> processing -> done
                     \\________________/-> timed_out
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "failed"})


class PollState(str, Enum):
    UPLOADING = "uploading"
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class PollSnapshot:
    state: PollState
    status: str | None
    progress: int
    stage: str
    data: dict[str, Any] | None = None
    fallback_to_manual: bool = False


class StatusPoller(ABC):
    """Fixed-interval polling state machine over an ``httpx.AsyncClient``."""

    interval_seconds: float
    window_seconds: float

    def __init__(
        self,
        client: httpx.AsyncClient,
        interval_seconds: float | None = None,
        window_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        if interval_seconds is not None:
            self.interval_seconds = interval_seconds
        if window_seconds is not None:
            self.window_seconds = window_seconds
        self._sleep = sleep
        self.state = PollState.UPLOADING
        self.polls = 0
        self.last_status: str | None = None
        self.last_body: dict[str, Any] | None = None

    @property
    def max_polls(self) -> int:
        return max(1, int(self.window_seconds // self.interval_seconds))

    @abstractmethod
    def status_path(self) -> str:
        """Relative URL of the status endpoint."""

    @abstractmethod
    def progress(self, body: dict[str, Any]) -> int:
        """Cosmetic progress for a non-terminal poll."""

    @abstractmethod
    def stage(self, body: dict[str, Any]) -> str:
        """Cosmetic stage label for a non-terminal poll."""

    def mark_queued(self) -> None:
        """The submission was accepted; polling may start."""
        if self.state == PollState.UPLOADING:
            self.state = PollState.QUEUED

    async def poll_once(self) -> PollSnapshot:
        """Fetch the status once and advance the state machine.

        A failed request counts as a poll without news; the state is kept.
        """
        self.mark_queued()
        self.polls += 1
        try:
            response = await self.client.get(self.status_path())
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Status poll {self.polls} for {self.status_path()} failed: {e}")
            return self._snapshot(self.last_body or {})

        self.last_body = body
        self.last_status = body.get("status")
        if self.last_status in TERMINAL_STATUSES:
            self.state = PollState.DONE
        elif self.last_status == "processing":
            self.state = PollState.PROCESSING
        else:
            self.state = PollState.QUEUED
        return self._snapshot(body)

    async def run(
        self, on_update: Callable[[PollSnapshot], None] | None = None
    ) -> PollSnapshot:
        """Poll until a terminal status or the window expires."""
        while True:
            snapshot = await self.poll_once()
            if on_update:
                on_update(snapshot)
            if snapshot.state == PollState.DONE:
                return snapshot
            if self.polls >= self.max_polls:
                self.state = PollState.TIMED_OUT
                logger.info(
                    f"Gave up on {self.status_path()} after {self.polls} polls "
                    f"(last status {self.last_status})"
                )
                expired = self._snapshot(self.last_body or {})
                if on_update:
                    on_update(expired)
                return expired
            await self._sleep(self.interval_seconds)

    def _snapshot(self, body: dict[str, Any]) -> PollSnapshot:
        if self.state == PollState.DONE:
            failed = self.last_status == "failed"
            return PollSnapshot(
                state=self.state,
                status=self.last_status,
                progress=100,
                stage="Failed" if failed else "Complete",
                data=body,
                fallback_to_manual=failed,
            )
        if self.state == PollState.TIMED_OUT:
            return PollSnapshot(
                state=self.state,
                status=self.last_status,
                progress=self.progress(body),
                stage="Taking longer than expected",
                data=body or None,
                fallback_to_manual=True,
            )
        return PollSnapshot(
            state=self.state,
            status=self.last_status,
            progress=self.progress(body),
            stage=self.stage(body),
            data=body or None,
        )


class ReceiptStatusPoller(StatusPoller):
    """Polls one receipt every 2 seconds for up to 2 minutes."""

    interval_seconds = 2.0
    window_seconds = 120.0

    def __init__(self, client: httpx.AsyncClient, receipt_id: int, **kwargs: Any) -> None:
        super().__init__(client, **kwargs)
        self.receipt_id = receipt_id

    def status_path(self) -> str:
        return f"/api/v1/receipts/{self.receipt_id}/status"

    def progress(self, body: dict[str, Any]) -> int:
        return min(95, 10 + self.polls * 5)

    def stage(self, body: dict[str, Any]) -> str:
        if self.state == PollState.PROCESSING:
            if self.polls < 4:
                return "Reading receipt"
            return "Extracting details"
        return "Waiting in queue"


class BatchStatusPoller(StatusPoller):
    """Polls one batch session every 3 seconds for up to 5 minutes."""

    interval_seconds = 3.0
    window_seconds = 300.0

    def __init__(self, client: httpx.AsyncClient, session_id: str, **kwargs: Any) -> None:
        super().__init__(client, **kwargs)
        self.session_id = session_id

    def status_path(self) -> str:
        return f"/api/v1/batches/{self.session_id}"

    @staticmethod
    def _counts(body: dict[str, Any]) -> tuple[int, int]:
        files = body.get("files") or []
        finished = sum(1 for f in files if f.get("status") in TERMINAL_STATUSES)
        return finished, len(files)

    def progress(self, body: dict[str, Any]) -> int:
        finished, total = self._counts(body)
        if not total:
            return 10
        return min(95, 10 + int(finished / total * 85))

    def stage(self, body: dict[str, Any]) -> str:
        finished, total = self._counts(body)
        if not total or self.state == PollState.QUEUED:
            return "Waiting in queue"
        return f"Processed {finished} of {total} files"
