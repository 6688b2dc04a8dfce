import asyncio
import json
import logging
from enum import Enum
from typing import Any, Dict, Protocol

from fastapi import Request, WebSocket, WebSocketDisconnect

from app.errors import AuthenticationFailure, UpstreamFailure
from app.security import CredentialVerifier, audit_auth_failure, extract_auth_token, strip_bearer
from schemas.notify import CHANNELS, EventBase

logger = logging.getLogger("cirqls.hub")

CLOSE_BAD_INIT = 4400
CLOSE_UNAUTHORIZED = 4401
CLOSE_UNKNOWN_CHANNEL = 4404
CLOSE_HANDSHAKE_TIMEOUT = 4408
CLOSE_UPSTREAM = 1011
CLOSE_GOING_AWAY = 1001


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    OPEN = "open"
    CLOSED = "closed"


class Subscriber:
    """One authenticated push connection for one user on one channel."""

    def __init__(self, connection: Connection, user_id: int, channel: str):
        self.connection = connection
        self.user_id = user_id
        self.channel = channel
        self.state = ConnectionState.AUTHENTICATED
        # asyncio.Lock is FIFO, so frames for one subscriber go out in publish order
        self._send_lock = asyncio.Lock()

    @property
    def key(self) -> tuple[str, int]:
        return self.channel, self.user_id

    async def send(self, message: dict) -> bool:
        async with self._send_lock:
            if self.state is ConnectionState.CLOSED:
                return False
            await self.connection.send_json(message)
            return True


class NotificationHub:
    """Registry of live push subscribers and best-effort event delivery.

    Created once per application at startup and shut down with it. Every
    mutation of the registry happens under a single lock. Events for users
    without a live subscriber are dropped; durable copies live in the
    entity store and are read back through ordinary queries.
    """

    def __init__(self, verifier: CredentialVerifier):
        self.verifier = verifier
        self._subscribers: Dict[tuple[str, int], Subscriber] = {}
        self._lock = asyncio.Lock()

    async def register(self, connection: Connection, token: str | None, channel: str) -> Subscriber:
        if channel not in CHANNELS:
            raise ValueError(f"Unknown channel {channel!r}")
        try:
            user_id = await self.verifier.verify(token)
        except AuthenticationFailure:
            await self._reject(connection, CLOSE_UNAUTHORIZED, "authentication_failure")
            raise
        except UpstreamFailure:
            await self._reject(connection, CLOSE_UPSTREAM, "upstream_failure")
            raise

        subscriber = Subscriber(connection, user_id, channel)
        # Hold the send lock so the ack is the first frame the client sees
        async with subscriber._send_lock:
            async with self._lock:
                previous = self._subscribers.get(subscriber.key)
                self._subscribers[subscriber.key] = subscriber
            try:
                await connection.send_json({"type": "connection_ack", "channel": channel})
            except Exception:
                async with self._lock:
                    if self._subscribers.get(subscriber.key) is subscriber:
                        # The previous subscriber may have gone away while displaced
                        if previous is not None and previous.state is not ConnectionState.CLOSED:
                            self._subscribers[subscriber.key] = previous
                        else:
                            del self._subscribers[subscriber.key]
                subscriber.state = ConnectionState.CLOSED
                raise
            subscriber.state = ConnectionState.OPEN
        if previous is not None:
            logger.info("subscriber replaced channel=%s user=%s", channel, user_id)
        else:
            logger.info("subscriber registered channel=%s user=%s", channel, user_id)
        return subscriber

    async def _reject(self, connection: Connection, code: int, kind: str) -> None:
        try:
            await connection.send_json({"type": "connection_error", "error": kind})
            await connection.close(code=code)
        except Exception as exc:
            logger.debug("connection already gone during rejection: %s", exc)

    async def unregister(self, subscriber: Subscriber) -> None:
        async with self._lock:
            if self._subscribers.get(subscriber.key) is subscriber:
                del self._subscribers[subscriber.key]
                logger.info("subscriber unregistered channel=%s user=%s", subscriber.channel, subscriber.user_id)
        subscriber.state = ConnectionState.CLOSED

    async def publish(self, event: EventBase) -> int:
        """Push ``event`` to the recipient's live subscribers; returns deliveries."""
        async with self._lock:
            targets = [
                self._subscribers[(channel, event.recipient_id)]
                for channel in event.channels
                if (channel, event.recipient_id) in self._subscribers
            ]
        if not targets:
            logger.debug("no live subscriber recipient=%s kind=%s", event.recipient_id, getattr(event, "kind", "-"))
            return 0
        payload = event.model_dump(mode="json")
        delivered = 0
        for subscriber in targets:
            try:
                sent = await subscriber.send({"type": "data", "channel": subscriber.channel, "payload": payload})
            except Exception as exc:
                logger.info(
                    "push failed, dropping subscriber channel=%s user=%s error=%s",
                    subscriber.channel,
                    subscriber.user_id,
                    exc,
                )
                await self.unregister(subscriber)
                continue
            if sent:
                delivered += 1
        return delivered

    def online_users(self, channel: str) -> set[int]:
        return {user_id for (ch, user_id) in self._subscribers if ch == channel}

    def is_registered(self, subscriber: Subscriber) -> bool:
        return self._subscribers.get(subscriber.key) is subscriber

    async def shutdown(self) -> None:
        async with self._lock:
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
        for subscriber in subscribers:
            subscriber.state = ConnectionState.CLOSED
            try:
                await subscriber.connection.close(code=CLOSE_GOING_AWAY)
            except Exception as exc:
                logger.debug("close on shutdown failed user=%s: %s", subscriber.user_id, exc)
        logger.info("hub shut down, closed %d subscribers", len(subscribers))


def _token_from_init(frame: Any) -> str | None:
    if not isinstance(frame, dict) or frame.get("type") != "connection_init":
        raise ValueError("expected connection_init")
    payload = frame.get("payload") or {}
    if not isinstance(payload, dict):
        raise ValueError("connection_init payload must be an object")
    raw = payload.get("authorization") or payload.get("Authorization") or payload.get("token")
    return strip_bearer(raw)


async def _receive_text(websocket: WebSocket) -> str | None:
    """Next text frame, ``None`` for a binary frame."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    return message.get("text")


async def serve_subscription(websocket: WebSocket, hub: NotificationHub, channel: str, handshake_timeout: float):
    """Drive one push connection: handshake, register, keepalive, unregister."""
    if channel not in CHANNELS:
        await websocket.close(code=CLOSE_UNKNOWN_CHANNEL)
        return
    await websocket.accept()

    token = extract_auth_token(websocket)
    if not token:
        try:
            raw = await asyncio.wait_for(_receive_text(websocket), timeout=handshake_timeout)
            if raw is None:
                raise ValueError("connection_init must be a text frame")
            token = _token_from_init(json.loads(raw))
        except asyncio.TimeoutError:
            await websocket.close(code=CLOSE_HANDSHAKE_TIMEOUT)
            return
        except WebSocketDisconnect:
            # Abandoned mid-handshake; nothing was registered
            return
        except ValueError:
            await websocket.close(code=CLOSE_BAD_INIT)
            return

    try:
        subscriber = await hub.register(websocket, token, channel)
    except AuthenticationFailure:
        audit_auth_failure(websocket, "ws_invalid_token", token_present=bool(token))
        return
    except UpstreamFailure:
        return
    except WebSocketDisconnect:
        return
    except Exception as exc:
        # Ack could not be sent; register already rolled the registry back
        logger.info("handshake aborted channel=%s error=%s", channel, exc)
        return

    try:
        while True:
            raw = await _receive_text(websocket)
            if raw is None:
                continue
            try:
                frame = json.loads(raw)
            except ValueError:
                continue
            if not isinstance(frame, dict):
                continue
            if frame.get("type") == "ping":
                await subscriber.send({"type": "pong"})
            elif frame.get("type") == "connection_terminate":
                await websocket.close()
                break
    except WebSocketDisconnect:
        pass
    finally:
        await hub.unregister(subscriber)


def get_hub(request: Request) -> NotificationHub:
    return request.app.state.hub
