"""
smartmarks/state.py — Persisted job state + progress broadcast.

Store keys
----------
org_state           : OrganizationJobState.to_dict()
organize_progress   : last broadcast payload {status, done, total, error?, message?}
organization_stats  : OrganizationStats.to_dict()

Observers reconcile from the persisted organize_progress snapshot plus live
events. Publishing is fire-and-forget: a full subscriber queue or a failing
listener never reaches the publisher.

Public API
----------
  ProgressChannel
    subscribe(maxsize) -> asyncio.Queue / unsubscribe(queue)
    add_listener(fn) / remove_listener(fn)
    publish(payload)
  JobStateStore(store, channel=None)
    load_state() / save_state(state)
    load_stats() / save_stats(stats)
    progress_snapshot() -> dict
    broadcast(payload)          persist snapshot, then publish
    clear_progress()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from smartmarks.models import OrganizationJobState, OrganizationStats
from smartmarks.store import KeyValueStore

logger = logging.getLogger(__name__)

STATE_KEY = "org_state"
PROGRESS_KEY = "organize_progress"
STATS_KEY = "organization_stats"

Listener = Callable[[dict[str, Any]], Any]


# ---------------------------------------------------------------------------
# Pub/sub
# ---------------------------------------------------------------------------

class ProgressChannel:
    def __init__(self) -> None:
        self._queues: list[asyncio.Queue] = []
        self._listeners: list[Listener] = []

    def subscribe(self, maxsize: int = 100) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._queues.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        try:
            self._queues.remove(q)
        except ValueError:
            pass

    def add_listener(self, fn: Listener) -> None:
        self._listeners.append(fn)

    def remove_listener(self, fn: Listener) -> None:
        try:
            self._listeners.remove(fn)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._queues) + len(self._listeners)

    def publish(self, payload: dict[str, Any]) -> None:
        for q in list(self._queues):
            try:
                q.put_nowait(dict(payload))
            except asyncio.QueueFull:
                logger.debug("progress subscriber queue full, dropping event")
        for fn in list(self._listeners):
            try:
                fn(dict(payload))
            except Exception as e:
                logger.warning("progress listener failed: %s", e)


# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------

class JobStateStore:
    def __init__(self, store: KeyValueStore, channel: ProgressChannel | None = None) -> None:
        self._store = store
        self.channel = channel or ProgressChannel()

    def load_state(self) -> OrganizationJobState:
        return OrganizationJobState.from_dict(self._store.get_one(STATE_KEY))

    def save_state(self, state: OrganizationJobState) -> None:
        self._store.set({STATE_KEY: state.to_dict()})

    def load_stats(self) -> OrganizationStats:
        return OrganizationStats.from_dict(self._store.get_one(STATS_KEY))

    def save_stats(self, stats: OrganizationStats) -> None:
        self._store.set({STATS_KEY: stats.to_dict()})

    def progress_snapshot(self) -> dict[str, Any]:
        snap = self._store.get_one(PROGRESS_KEY)
        if snap:
            return snap
        return self.load_state().progress()

    def broadcast(self, payload: dict[str, Any]) -> None:
        try:
            self._store.set({PROGRESS_KEY: payload})
        except Exception as e:
            logger.warning("could not persist progress snapshot: %s", e)
        self.channel.publish(payload)

    def clear_progress(self) -> None:
        self._store.remove(PROGRESS_KEY)
