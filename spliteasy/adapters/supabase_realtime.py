"""Supabase Realtime adapter — implements RealtimePort.

Speaks the Phoenix channel protocol over a websocket (the `websockets`
library): one socket per process, one channel per subscription, a
heartbeat every 30 seconds, and automatic reconnect with channel rejoin.

Row changes arrive as `postgres_changes` messages and are handed to the
subscriber as ChangeEvent objects.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable

import websockets

from spliteasy.ports.remote_port import ChangeCallback, ChangeEvent

logger = logging.getLogger(__name__)

_PROTOCOL_VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# Protocol messages
# ---------------------------------------------------------------------------


def realtime_url(supabase_url: str, api_key: str) -> str:
    """Websocket endpoint for a Supabase project URL."""
    base = supabase_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/realtime/v1/websocket?apikey={api_key}&vsn={_PROTOCOL_VERSION}"


def join_message(topic: str, tables: list[str], api_key: str, ref: str) -> dict:
    """phx_join for all change events on `tables` in the public schema."""
    return {
        "topic": topic,
        "event": "phx_join",
        "payload": {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {"event": "*", "schema": "public", "table": table} for table in tables
                ],
            },
            "access_token": api_key,
        },
        "ref": ref,
    }


def leave_message(topic: str, ref: str) -> dict:
    return {"topic": topic, "event": "phx_leave", "payload": {}, "ref": ref}


def heartbeat_message(ref: str) -> dict:
    return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": ref}


def parse_change(message: dict) -> ChangeEvent | None:
    """Extract a ChangeEvent from a `postgres_changes` message, else None."""
    if message.get("event") != "postgres_changes":
        return None
    data = (message.get("payload") or {}).get("data") or {}
    table = data.get("table")
    change_type = data.get("type") or data.get("eventType")
    if not table or not change_type:
        return None
    return ChangeEvent(
        table=table,
        type=str(change_type).upper(),
        record=data.get("record") or {},
        old_record=data.get("old_record") or {},
        commit_timestamp=data.get("commit_timestamp") or "",
    )


@dataclass
class _Channel:
    topic: str
    tables: list[str]
    callback: ChangeCallback


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class SupabaseRealtime:
    """websockets implementation of RealtimePort."""

    def __init__(
        self,
        url: str,
        api_key: str,
        heartbeat_seconds: float = 30.0,
        reconnect_seconds: float = 5.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._url = realtime_url(url, api_key)
        self._api_key = api_key
        self._heartbeat_seconds = heartbeat_seconds
        self._reconnect_seconds = reconnect_seconds
        self._connect = connect

        self._channels: dict[str, _Channel] = {}
        self._ws: Any = None
        self._runner: asyncio.Task | None = None
        self._ref = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def _send(self, message: dict) -> None:
        if self._ws is None:
            return
        await self._ws.send(json.dumps(message))

    async def subscribe(self, tables: list[str], callback: ChangeCallback) -> str:
        """Open a channel for `tables`. Returns the channel topic as the handle."""
        topic = f"realtime:spliteasy-{uuid.uuid4().hex[:8]}"
        channel = _Channel(topic=topic, tables=list(tables), callback=callback)
        self._channels[topic] = channel

        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run())
        elif self._ws is not None:
            await self._send(join_message(topic, channel.tables, self._api_key, self._next_ref()))

        logger.info("Subscribed to realtime changes on %s", ", ".join(tables))
        return topic

    async def unsubscribe(self, handle: str) -> None:
        channel = self._channels.pop(handle, None)
        if channel is None:
            return
        try:
            await self._send(leave_message(channel.topic, self._next_ref()))
        except websockets.ConnectionClosed:
            pass
        if not self._channels:
            await self.close()

    async def close(self) -> None:
        """Stop the socket loop and close the connection."""
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            await self._send(heartbeat_message(self._next_ref()))

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError as exc:
            logger.warning("Ignoring malformed realtime message: %s", exc)
            return
        if not isinstance(message, dict):
            return

        if message.get("event") == "phx_reply":
            status = (message.get("payload") or {}).get("status")
            if status != "ok":
                logger.warning("Realtime %s replied %s", message.get("topic"), status)
            return

        event = parse_change(message)
        if event is None:
            return
        channel = self._channels.get(message.get("topic", ""))
        if channel is None or event.table not in channel.tables:
            return
        try:
            await channel.callback(event)
        except Exception as exc:
            logger.error("Realtime handler failed for %s %s: %s", event.type, event.table, exc)

    async def _run(self) -> None:
        while self._channels:
            heartbeat: asyncio.Task | None = None
            try:
                async with self._connect(self._url) as ws:
                    self._ws = ws
                    logger.info("Realtime socket connected")
                    for channel in list(self._channels.values()):
                        await self._send(join_message(
                            channel.topic, channel.tables, self._api_key, self._next_ref(),
                        ))
                    heartbeat = asyncio.create_task(self._heartbeat())
                    async for raw in ws:
                        await self._dispatch(raw)
            except (websockets.WebSocketException, OSError, asyncio.TimeoutError) as exc:
                logger.warning("Realtime socket lost: %s", exc)
            finally:
                if heartbeat is not None:
                    heartbeat.cancel()
                self._ws = None

            if self._channels:
                logger.info("Reconnecting realtime in %.0fs", self._reconnect_seconds)
                await asyncio.sleep(self._reconnect_seconds)
