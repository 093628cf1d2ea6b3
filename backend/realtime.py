"""WebSocket rooms and the game events pushed through them."""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from cache import fast_dumps
from config import config

logger = logging.getLogger(__name__)


class EventType:
    SCORE_UPDATED = "score_updated"
    VIOLATION_WARNING = "violation_warning"
    ELIMINATED = "eliminated"
    ANSWER_REVEALED = "answer_revealed"
    QUESTION_CHANGED = "question_changed"
    GAME_STATUS_CHANGED = "game_status_changed"
    TIME_SYNC = "time_sync"
    PARTICIPANT_JOINED = "participant_joined"

    # sent without waiting for a batch window
    CRITICAL = {
        QUESTION_CHANGED,
        ANSWER_REVEALED,
        GAME_STATUS_CHANGED,
        TIME_SYNC,
        ELIMINATED,
    }


class ConnectionManager:
    """Per-game WebSocket rooms with a batching broadcast worker and heartbeats."""

    def __init__(self, max_connections_per_room: int = None):
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        self.user_sockets: Dict[str, WebSocket] = {}
        self.heartbeat_tasks: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._broadcast_queue: Dict[str, asyncio.Queue] = {}
        self._broadcast_tasks: Dict[str, asyncio.Task] = {}
        self._cleanup_tasks: Dict[str, asyncio.Task] = {}

        self._connection_rate: Dict[str, list] = defaultdict(list)
        self._max_connections_per_room = max_connections_per_room or config.MAX_PARTICIPANTS

        self._message_count: Dict[str, int] = defaultdict(int)
        self._last_reset: float = time.time()

    async def connect(self, websocket: WebSocket, game_id: str, participant_id: str = None) -> bool:
        try:
            await websocket.accept()
        except RuntimeError as e:
            logger.error(f"Failed to accept WebSocket: {e}")
            return False

        async with self._lock:
            room = self.active_connections.get(game_id)
            if room is not None and len(room) >= self._max_connections_per_room:
                await websocket.close(code=1013, reason="Room at capacity")
                return False

            # at most 20 new connections per second per room
            now = time.time()
            self._connection_rate[game_id] = [
                t for t in self._connection_rate[game_id] if now - t < 1.0
            ]
            if len(self._connection_rate[game_id]) >= 20:
                await websocket.close(code=1013, reason="Too many connections")
                return False
            self._connection_rate[game_id].append(now)

            if room is None:
                self.active_connections[game_id] = set()
                self._broadcast_queue[game_id] = asyncio.Queue()
                self._broadcast_tasks[game_id] = asyncio.create_task(
                    self._broadcast_worker(game_id)
                )
                self._cleanup_tasks[game_id] = asyncio.create_task(
                    self._cleanup_dead_connections(game_id)
                )

            self.active_connections[game_id].add(websocket)
            logger.info(f"✓ Connected: {game_id} ({len(self.active_connections[game_id])} total)")

        if participant_id:
            await self.bind_user(websocket, game_id, participant_id)
        return True

    async def bind_user(self, websocket: WebSocket, game_id: str, participant_id: str):
        """Attach an accepted socket to a participant, replacing any older socket."""
        async with self._lock:
            old_socket = self.user_sockets.get(participant_id)
            if old_socket is not None and old_socket is not websocket:
                self.active_connections.get(game_id, set()).discard(old_socket)
                try:
                    await old_socket.close(code=1000, reason="New connection")
                except RuntimeError:
                    pass  # already closed

            self.user_sockets[participant_id] = websocket

            if participant_id in self.heartbeat_tasks:
                self.heartbeat_tasks[participant_id].cancel()
            self.heartbeat_tasks[participant_id] = asyncio.create_task(
                self._heartbeat(websocket, participant_id)
            )

    def disconnect(self, websocket: WebSocket, game_id: str, participant_id: str = None):
        if game_id in self.active_connections:
            self.active_connections[game_id].discard(websocket)
            if not self.active_connections[game_id]:
                self._drop_room(game_id)

        if participant_id and self.user_sockets.get(participant_id) is websocket:
            self.user_sockets.pop(participant_id, None)
            task = self.heartbeat_tasks.pop(participant_id, None)
            if task:
                task.cancel()

        logger.info(f"✗ Disconnected: {game_id}")

    def _drop_room(self, game_id: str):
        self.active_connections.pop(game_id, None)
        self._broadcast_queue.pop(game_id, None)
        task = self._broadcast_tasks.pop(game_id, None)
        if task:
            task.cancel()
        task = self._cleanup_tasks.pop(game_id, None)
        if task:
            task.cancel()

    def is_connected(self, participant_id: str) -> bool:
        return participant_id in self.user_sockets

    async def _broadcast_worker(self, game_id: str):
        """Drains the room queue, batching non-critical messages for up to 10ms."""
        try:
            queue = self._broadcast_queue[game_id]
            batch: List[Dict] = []
            last_send = time.time()

            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=0.01)
                    if message is None:
                        break

                    batch.append(message)
                    now = time.time()
                    if message.get("type") in EventType.CRITICAL or now - last_send > 0.01:
                        await self._send_batch(game_id, batch)
                        batch = []
                        last_send = now
                except asyncio.TimeoutError:
                    if batch:
                        await self._send_batch(game_id, batch)
                        batch = []
                        last_send = time.time()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Broadcast worker error: {e}")

    async def _send_batch(self, game_id: str, messages: List[Dict]):
        if game_id not in self.active_connections or not messages:
            return

        if len(messages) == 1:
            data = fast_dumps(messages[0])
        else:
            data = fast_dumps({"type": "batch", "messages": messages})

        dead_sockets: List[WebSocket] = []
        connections = list(self.active_connections[game_id])
        await asyncio.gather(
            *[self._send_message(conn, data, dead_sockets) for conn in connections],
            return_exceptions=True,
        )
        for socket in dead_sockets:
            self.active_connections.get(game_id, set()).discard(socket)

    async def _send_message(self, conn: WebSocket, data: str, dead_sockets: list):
        try:
            await conn.send_text(data)
        except Exception:
            dead_sockets.append(conn)

    async def broadcast(self, game_id: str, message: dict):
        if game_id in self._broadcast_queue:
            await self._broadcast_queue[game_id].put(message)
            self._message_count[game_id] += 1

    async def send_to_user(self, participant_id: str, message: dict):
        ws = self.user_sockets.get(participant_id)
        if ws is None:
            return
        try:
            await ws.send_text(fast_dumps(message))
        except Exception as e:
            logger.error(f"Failed to send to {participant_id}: {e}")

    async def _heartbeat(self, ws: WebSocket, participant_id: str):
        try:
            while True:
                await asyncio.sleep(config.WS_HEARTBEAT_SEC)
                try:
                    await ws.send_text(fast_dumps({"type": "ping", "t": int(time.time() * 1000)}))
                except Exception:
                    logger.info(f"Heartbeat stopped for {participant_id}")
                    break
        except asyncio.CancelledError:
            pass

    async def _cleanup_dead_connections(self, game_id: str):
        """Drops sockets that closed without a disconnect, every 30s."""
        try:
            while game_id in self.active_connections:
                await asyncio.sleep(30)
                room = self.active_connections.get(game_id)
                if room is None:
                    break
                dead = [
                    ws
                    for ws in list(room)
                    if ws.client_state != WebSocketState.CONNECTED
                ]
                for ws in dead:
                    room.discard(ws)
                if dead:
                    logger.info(f"Cleaned {len(dead)} dead connections from {game_id}")
        except asyncio.CancelledError:
            pass

    async def close_room(self, game_id: str):
        for ws in list(self.active_connections.get(game_id, set())):
            try:
                await ws.close(code=1000, reason="Game deleted")
            except RuntimeError:
                pass
        self._drop_room(game_id)

    def get_performance_stats(self) -> dict:
        elapsed = max(time.time() - self._last_reset, 1e-6)
        stats = {
            "rooms": len(self.active_connections),
            "connections": sum(len(c) for c in self.active_connections.values()),
            "participants": len(self.user_sockets),
            "messagesPerSec": {
                game_id: round(count / elapsed, 2) for game_id, count in self._message_count.items()
            },
        }
        if elapsed > 60:
            self._message_count.clear()
            self._last_reset = time.time()
        return stats


class GameEvents:
    """Typed event emitters over a ConnectionManager.

    Everything the game logic pushes to clients goes through here, so tests
    can swap in a recorder by overriding ``to_game`` and ``to_participant``.
    """

    def __init__(self, manager: Optional[ConnectionManager] = None):
        self.manager = manager

    async def to_game(self, game_id: str, message: Dict[str, Any]):
        if self.manager:
            await self.manager.broadcast(game_id, message)

    async def to_participant(self, participant_id: str, message: Dict[str, Any]):
        if self.manager:
            await self.manager.send_to_user(participant_id, message)

    async def score_updated(self, game_id: str, participant_id: str, score: int, points_delta: int):
        await self.to_game(
            game_id,
            {
                "type": EventType.SCORE_UPDATED,
                "participantId": participant_id,
                "score": score,
                "pointsDelta": points_delta,
            },
        )

    async def violation_warning(
        self,
        participant_id: str,
        message: str,
        severity: str,
        reason: str,
        violation_count: int,
        score: int,
    ):
        await self.to_participant(
            participant_id,
            {
                "type": EventType.VIOLATION_WARNING,
                "message": message,
                "severity": severity,
                "reason": reason,
                "violationCount": violation_count,
                "score": score,
            },
        )

    async def eliminated(self, game_id: str, participant_id: str, message: str):
        await self.to_participant(
            participant_id,
            {"type": EventType.ELIMINATED, "participantId": participant_id, "message": message},
        )
        await self.to_game(
            game_id, {"type": EventType.ELIMINATED, "participantId": participant_id}
        )

    async def answer_revealed(self, game_id: str, question_id: str, correct_answer: Any):
        await self.to_game(
            game_id,
            {
                "type": EventType.ANSWER_REVEALED,
                "questionId": question_id,
                "correctAnswer": correct_answer,
            },
        )

    async def question_changed(self, game_id: str, question: Dict[str, Any], server_time: int):
        await self.to_game(
            game_id,
            {"type": EventType.QUESTION_CHANGED, "question": question, "serverTime": server_time},
        )

    async def game_status_changed(self, game_id: str, status: str):
        await self.to_game(game_id, {"type": EventType.GAME_STATUS_CHANGED, "status": status})

    async def time_sync(self, game_id: str, question_id: str, remaining: int):
        await self.to_game(
            game_id,
            {
                "type": EventType.TIME_SYNC,
                "questionId": question_id,
                "remaining": remaining,
                "serverTime": int(time.time() * 1000),
            },
        )

    async def participant_joined(self, game_id: str, participant: Dict[str, Any]):
        await self.to_game(
            game_id, {"type": EventType.PARTICIPANT_JOINED, "participant": participant}
        )
