"""Durable task streams, retry/dead-letter policy and the agent worker loop."""

from remedybot.queue.retry import RetryInfo, RetryOutcome, RetryPolicy
from remedybot.queue.streams import PendingEntry, StreamEntry, StreamStore
from remedybot.queue.worker import AgentWorker

__all__ = [
    "AgentWorker",
    "PendingEntry",
    "RetryInfo",
    "RetryOutcome",
    "RetryPolicy",
    "StreamEntry",
    "StreamStore",
]
