from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

import structlog
from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect

from rxshare.notifier import ChangeEvent, ChangeFeed, ResyncRequired, Subscription, SubscriptionClosed


logger = structlog.get_logger(__name__)

ReplayFn = Callable[[str, Optional[int]], List[ChangeEvent]]


class ChangeWebSocketManager:
    """Stream change-feed topics to websocket clients."""

    def __init__(self, feed: ChangeFeed, replay: ReplayFn) -> None:
        self._feed = feed
        self._replay = replay

    async def handle(self, websocket: WebSocket, topic: str, since: Optional[int] = None) -> None:
        """Accept *websocket* and stream events for *topic*.

        Persisted events after *since* are sent first.  After an overflow the
        client receives a ``resync`` marker followed by a replay from *since*.
        """

        subscription = self._feed.subscribe(topic, loop=asyncio.get_running_loop())
        await websocket.accept()
        await websocket.send_json({"event": "connected", "topic": topic})
        receiver = asyncio.create_task(self._wait_for_disconnect(websocket))
        try:
            if since is not None:
                await self._send_replay(websocket, subscription, since)
            while True:
                getter = asyncio.ensure_future(subscription.get())
                done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    break
                item = getter.result()
                await websocket.send_json(item.to_payload())
                if isinstance(item, ResyncRequired):
                    await self._send_replay(websocket, subscription, since or 0)
        except (WebSocketDisconnect, SubscriptionClosed):
            pass
        except Exception as exc:  # pragma: no cover
            logger.debug("changes_ws_error", topic=topic, error=str(exc))
        finally:
            receiver.cancel()
            self._feed.unsubscribe(subscription)
            logger.debug("changes_ws_closed", topic=topic)

    async def _send_replay(self, websocket: WebSocket, subscription: Subscription, since: int) -> None:
        events = await asyncio.to_thread(self._replay, subscription.topic, since)
        for event in subscription.accept(events):
            await websocket.send_json(event.to_payload())

    @staticmethod
    async def _wait_for_disconnect(websocket: WebSocket) -> None:
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            return


__all__ = ["ChangeWebSocketManager"]
