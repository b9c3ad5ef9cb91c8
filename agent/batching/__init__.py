"""
Message Batching Module.

Coalesces rapid inbound messages per contact into a single turn.
"""

from agent.batching.message_batcher import (
    Batch,
    InMemoryDebounceStore,
    MessageDebouncer,
    RedisDebounceStore,
)

__all__ = ["Batch", "InMemoryDebounceStore", "MessageDebouncer", "RedisDebounceStore"]
