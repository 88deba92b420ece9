"""Exponential backoff retry and dead-letter routing for stream tasks."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any

from loguru import logger

from remedybot.config.schema import RetryConfig
from remedybot.queue.streams import StreamEntry, StreamStore
from remedybot.utils.exceptions import QueueExhausted, sanitize_error_message
from remedybot.utils.helpers import utc_now_iso

DEFAULT_DEAD_LETTER_STREAM = "agents-dlq"

RETRY_KEYS = ("_retryAttempt", "_maxRetries", "_lastError", "_lastErrorCode", "_retryScheduledAt", "_retryDelayMs")
DLQ_KEYS = ("_dlqReason", "_dlqError", "_finalAttempt", "_sentToDLQAt", "_originalTaskId")


@dataclass
class RetryInfo:
    attempt: int
    max_retries: int


@dataclass
class RetryOutcome:
    requeued: bool
    attempt: int
    next_delay_ms: int | None = None
    entry_id: str | None = None  # id of the republished entry
    dead_letter_id: str | None = None
    exhausted: QueueExhausted | None = None


class RetryPolicy:
    """
    Applies the retry ceiling to failed payloads.

    A payload carries its attempt counter in `_retryAttempt` (0 on first
    delivery). After the failure that brings the count to max_retries it is
    published once to the dead-letter stream instead of the primary one.
    """

    def __init__(
        self,
        streams: StreamStore,
        config: RetryConfig | None = None,
        *,
        dead_letter_stream: str = DEFAULT_DEAD_LETTER_STREAM,
        rng: random.Random | None = None,
    ):
        self.streams = streams
        self.config = config or RetryConfig()
        self.dead_letter_stream = dead_letter_stream
        self._rng = rng or random.Random()

    def calculate_backoff(self, attempt: int) -> int:
        """
        Delay in ms before retrying after `attempt` failures.

        min(base * multiplier ** attempt, max_delay); non-decreasing in attempt
        unless jitter_ratio is set, and never above max_delay.
        """
        cfg = self.config
        delay = min(cfg.base_delay_ms * cfg.backoff_multiplier ** max(0, attempt), cfg.max_delay_ms)
        if cfg.jitter_ratio > 0:
            delay += delay * cfg.jitter_ratio * (self._rng.random() * 2 - 1)
            delay = min(max(delay, 0), cfg.max_delay_ms)
        return int(delay)

    def get_retry_info(self, payload: dict[str, Any]) -> RetryInfo:
        attempt = payload.get("_retryAttempt")
        max_retries = payload.get("_maxRetries")
        return RetryInfo(
            attempt=attempt if isinstance(attempt, int) and not isinstance(attempt, bool) else 0,
            max_retries=(
                max_retries
                if isinstance(max_retries, int) and not isinstance(max_retries, bool)
                else self.config.max_retries
            ),
        )

    def requeue_for_retry(
        self, stream: str, payload: dict[str, Any], error: str, error_code: str | None = None
    ) -> RetryOutcome:
        """Republish payload with backoff, or dead-letter it once the ceiling is reached."""
        info = self.get_retry_info(payload)
        next_attempt = info.attempt + 1
        error = sanitize_error_message(error)

        if next_attempt >= info.max_retries:
            exhausted = QueueExhausted(str(payload.get("taskId") or "unknown"), next_attempt, error)
            dlq_id = self._dead_letter(payload, exhausted)
            return RetryOutcome(requeued=False, attempt=next_attempt, dead_letter_id=dlq_id, exhausted=exhausted)

        delay_ms = self.calculate_backoff(info.attempt)
        retry_payload = {
            **payload,
            "_retryAttempt": next_attempt,
            "_maxRetries": info.max_retries,
            "_lastError": error,
            "_lastErrorCode": error_code,
            "_retryScheduledAt": utc_now_iso(),
            "_retryDelayMs": delay_ms,
        }
        entry_id = self.streams.add(stream, retry_payload, delay_ms=delay_ms)
        logger.info(f"Task {payload.get('taskId', '?')} requeued for retry {next_attempt}/{info.max_retries} in {delay_ms}ms")
        return RetryOutcome(requeued=True, attempt=next_attempt, next_delay_ms=delay_ms, entry_id=entry_id)

    def send_to_dead_letter(self, payload: dict[str, Any], error: str, final_attempt: int) -> str:
        exhausted = QueueExhausted(str(payload.get("taskId") or "unknown"), final_attempt, sanitize_error_message(error))
        return self._dead_letter(payload, exhausted)

    def _dead_letter(self, payload: dict[str, Any], exhausted: QueueExhausted) -> str:
        entry = {
            **payload,
            "_dlqReason": exhausted.details["last_error"],
            "_dlqError": exhausted.to_dict(),
            "_finalAttempt": exhausted.details["attempts"],
            "_sentToDLQAt": utc_now_iso(),
            "_originalTaskId": payload.get("taskId") or "unknown",
        }
        entry_id = self.streams.add(self.dead_letter_stream, entry)
        logger.error(f"Task {entry['_originalTaskId']} sent to dead-letter: {exhausted.message}")
        return entry_id

    def list_dead_letters(self, count: int = 100) -> list[StreamEntry]:
        return self.streams.range(self.dead_letter_stream, count=count)

    def replay_dead_letter(self, dlq_id: str, target_stream: str) -> str | None:
        """
        Move a dead-lettered payload back to target_stream with its counters reset.

        Returns the new entry id, or None when the id is not in the dead-letter stream.
        """
        entry = self.streams.get(self.dead_letter_stream, dlq_id)
        if entry is None:
            return None
        data = {k: v for k, v in entry.fields.items() if k not in RETRY_KEYS and k not in DLQ_KEYS}
        new_id = self.streams.add(target_stream, data)
        self.streams.delete(self.dead_letter_stream, [dlq_id])
        logger.info(f"Replayed dead-letter {dlq_id} to {target_stream} as {new_id}")
        return new_id
