"""
SplitEasy — Sync Context.

Explicit, per-instance sync state owned by the SyncEngine: whether a full
sync is running, whether we are offline, when the last successful sync
finished, and which remote writes this client made recently (used to drop
realtime echoes of our own writes).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field


@dataclass
class SyncContext:
    is_syncing: bool = False
    is_offline: bool = False
    last_sync: float | None = None            # epoch seconds of last successful sync
    pending_sync: asyncio.Task | None = None  # debounce timer
    echo_window: float = 5.0
    # (table, remote id) -> (monotonic push time, pushed updatedAt or None for deletes)
    recent_pushes: dict[tuple[str, str], tuple[float, str | None]] = field(default_factory=dict)

    @property
    def is_online(self) -> bool:
        return not self.is_offline

    def remember_push(self, table: str, remote_id: str, stamp: str | None = None) -> None:
        """Record that this client just wrote (or deleted) a remote row.

        `stamp` is the `updatedAt` value sent with an upsert. Deletes pass
        None and match any change on the row inside the echo window.
        """
        self.recent_pushes[(table, remote_id)] = (time.monotonic(), stamp)

    def is_echo(self, table: str, remote_id: str | None, stamp: str | None = None) -> bool:
        """True if a change on this row carries the write this client made."""
        if not remote_id:
            return False
        now = time.monotonic()
        # Drop expired entries while we're here
        for key, (pushed_at, _) in list(self.recent_pushes.items()):
            if now - pushed_at > self.echo_window:
                del self.recent_pushes[key]
        entry = self.recent_pushes.get((table, remote_id))
        if entry is None:
            return False
        pushed_stamp = entry[1]
        return pushed_stamp is None or (stamp is not None and str(stamp) == pushed_stamp)

    def cancel_pending(self) -> None:
        if self.pending_sync is not None and not self.pending_sync.done():
            self.pending_sync.cancel()
        self.pending_sync = None
