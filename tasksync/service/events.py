from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set

from tasksync.logging import get_logger
from tasksync.service.errors import AuthenticationError
from tasksync.service.tokens import TokenService

logger = get_logger(__name__)

EMAIL_VERIFIED = "email:verified"
PASSWORD_RESET = "password:reset"
EMAIL_CHANGED = "email:changed"

# Application close code for a failed handshake, mirrors HTTP 401
CLOSE_UNAUTHORIZED = 4401


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    JOINED = "joined"
    REJECTED = "rejected"
    DISCONNECTED = "disconnected"


class EventConnection(Protocol):
    """The slice of a Starlette ``WebSocket`` the broadcaster relies on."""

    async def accept(self) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...

    async def send_json(self, data: Any, mode: str = "text") -> None: ...


@dataclass(eq=False)
class Subscription:
    """One socket's membership in a user channel.

    Compared and hashed by identity; the wrapped connection (a Starlette
    ``WebSocket`` is a Mapping) cannot be used as a set member itself.
    """

    connection: EventConnection
    state: ConnectionState = ConnectionState.CONNECTING
    user_id: Optional[str] = None
    joined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def channel(self) -> Optional[str]:
        return channel_for(self.user_id) if self.user_id else None


def channel_for(user_id: str) -> str:
    return f"user:{user_id}"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionEventBroadcaster:
    """Fans account events out to every live socket of a user.

    Delivery is fire-and-forget inside this process: events for a user with
    no open socket are dropped, and a socket that fails to receive is
    unregistered rather than retried.
    """

    def __init__(self, tokens: TokenService) -> None:
        self.tokens = tokens
        self._lock = threading.Lock()
        self._channels: Dict[str, Set[Subscription]] = {}

    async def join(self, connection: EventConnection, token: Optional[str]) -> Subscription:
        """Authenticate the handshake and subscribe the socket to its user channel.

        A rejected socket is closed with 4401 before it is accepted and never
        reaches a channel; the returned subscription is then ``REJECTED``.
        """

        sub = Subscription(connection=connection)
        sub.state = ConnectionState.AUTHENTICATING
        user_id: Optional[str] = None
        if token:
            try:
                user_id = self.tokens.verify_access(token).user_id
            except AuthenticationError as exc:
                logger.info("event_handshake_rejected", reason=exc.message)
        else:
            logger.info("event_handshake_rejected", reason="missing token")
        if not user_id:
            sub.state = ConnectionState.REJECTED
            await connection.close(code=CLOSE_UNAUTHORIZED)
            return sub

        await connection.accept()
        sub.user_id = user_id
        with self._lock:
            self._channels.setdefault(channel_for(user_id), set()).add(sub)
            sub.state = ConnectionState.JOINED
        logger.info("event_connection_joined", user_id=user_id)
        return sub

    def leave(self, sub: Subscription) -> None:
        with self._lock:
            if sub.state != ConnectionState.JOINED:
                return
            sub.state = ConnectionState.DISCONNECTED
            members = self._channels.get(sub.channel or "")
            if members is not None:
                members.discard(sub)
                if not members:
                    self._channels.pop(sub.channel or "", None)
        logger.info("event_connection_left", user_id=sub.user_id)

    async def _deliver(self, subs: List[Subscription], frame: dict[str, Any]) -> int:
        delivered = 0
        for sub in subs:
            try:
                await sub.connection.send_json(frame)
            except Exception as exc:
                logger.warning(
                    "event_delivery_failed",
                    user_id=sub.user_id,
                    event_name=frame.get("event"),
                    error_type=type(exc).__name__,
                )
                self.leave(sub)
                continue
            delivered += 1
        return delivered

    async def notify(self, user_id: str, event: str, payload: Optional[dict] = None) -> int:
        with self._lock:
            subs = list(self._channels.get(channel_for(user_id), ()))
        if not subs:
            logger.debug("event_dropped_no_listener", user_id=user_id, event_name=event)
            return 0
        return await self._deliver(subs, {"event": event, "data": payload or {}})

    async def broadcast_all(self, event: str, payload: Optional[dict] = None) -> int:
        with self._lock:
            subs = [sub for members in self._channels.values() for sub in members]
        return await self._deliver(subs, {"event": event, "data": payload or {}})

    async def notify_email_verified(self, user_id: str) -> int:
        return await self.notify(
            user_id,
            EMAIL_VERIFIED,
            {"message": "Your email has been verified successfully", "timestamp": _timestamp()},
        )

    async def notify_password_reset(self, user_id: str) -> int:
        return await self.notify(
            user_id,
            PASSWORD_RESET,
            {"message": "Your password has been reset successfully", "timestamp": _timestamp()},
        )

    async def notify_email_changed(self, user_id: str, new_email: str) -> int:
        return await self.notify(
            user_id,
            EMAIL_CHANGED,
            {
                "message": "Your email address has been changed successfully",
                "email": new_email,
                "timestamp": _timestamp(),
            },
        )

    def pong(self) -> dict[str, Any]:
        return {"event": "pong", "data": {"timestamp": _timestamp()}}

    def connection_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._channels.get(channel_for(user_id), ()))
            return sum(len(members) for members in self._channels.values())
