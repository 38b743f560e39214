import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Set

from .errors import ProtocolError
from .scheduler import PeriodicTask

logger = logging.getLogger(__name__)

ALL_CHANNELS = "all"
NORMAL_CLOSURE = 1000
GOING_AWAY = 1001


class Transport(Protocol):
    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None: ...


@dataclass
class SubscriberConnection:
    id: str
    transport: Transport
    subscribed_channels: Set[str] = field(default_factory=set)
    has_subscribed: bool = False
    is_alive: bool = True
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    client_host: Optional[str] = None
    user_agent: Optional[str] = None

    def wants(self, channel: str) -> bool:
        # a connection that never subscribed gets every channel
        return channel == ALL_CHANNELS or not self.has_subscribed or channel in self.subscribed_channels


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, set):
        return sorted(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def encode(message: Dict[str, Any]) -> str:
    return json.dumps(message, default=_json_default)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BroadcastHub:
    """
    Fans events out to live subscriber connections.

    Sends are independent per connection: a failed send evicts that
    connection only. Any valid inbound frame marks a connection alive; a
    connection that sent nothing between two heartbeat rounds is evicted, so
    a silent client is gone within two heartbeat intervals.
    """

    def __init__(self, *, heartbeat_interval: float = 30.0, welcome_message: str = "Connected to system monitor"):
        self.heartbeat_interval = heartbeat_interval
        self.welcome_message = welcome_message
        self.clients: Dict[str, SubscriberConnection] = {}
        self._heartbeat: Optional[PeriodicTask] = None

    # -------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------

    async def connect(
        self, transport: Transport, *, client_host: Optional[str] = None, user_agent: Optional[str] = None
    ) -> SubscriberConnection:
        conn = SubscriberConnection(
            id=f"client_{uuid.uuid4().hex[:12]}",
            transport=transport,
            client_host=client_host,
            user_agent=user_agent,
        )
        self.clients[conn.id] = conn
        logger.info("WebSocket client connected: %s (%s)", conn.id, client_host)
        await self.send_to_client(
            conn.id,
            {
                "type": "welcome",
                "data": {"clientId": conn.id, "timestamp": _now_iso(), "message": self.welcome_message},
            },
        )
        return conn

    def disconnect(self, client_id: str, code: Optional[int] = None) -> bool:
        conn = self.clients.pop(client_id, None)
        if conn is None:
            return False
        logger.info("WebSocket client disconnected: %s (code: %s)", client_id, code)
        return True

    async def _evict(self, conn: SubscriberConnection, reason: str) -> None:
        if self.clients.pop(conn.id, None) is None:
            return
        logger.info("Removing client %s: %s", conn.id, reason)
        try:
            await conn.transport.close(GOING_AWAY, reason)
        except Exception as exc:
            logger.debug("Close of evicted client %s failed: %s", conn.id, exc)

    # -------------------------------------------------------
    # Outbound
    # -------------------------------------------------------

    async def _deliver(self, conn: SubscriberConnection, text: str) -> bool:
        try:
            await conn.transport.send_text(text)
            return True
        except Exception as exc:
            logger.error("Error sending to client %s: %s", conn.id, exc)
            await self._evict(conn, "send failed")
            return False

    async def send_to_client(self, client_id: str, message: Dict[str, Any]) -> bool:
        conn = self.clients.get(client_id)
        if conn is None:
            return False
        return await self._deliver(conn, encode(message))

    async def broadcast(self, type: str, data: Any, channel: str = ALL_CHANNELS) -> int:
        text = encode({"type": type, "data": data, "timestamp": _now_iso()})
        sent = 0
        for conn in list(self.clients.values()):
            if not conn.wants(channel):
                continue
            if await self._deliver(conn, text):
                sent += 1
        if sent:
            logger.debug("Broadcasted %s to %d clients", type, sent)
        return sent

    # -------------------------------------------------------
    # Inbound
    # -------------------------------------------------------

    async def handle_message(self, client_id: str, raw) -> None:
        conn = self.clients.get(client_id)
        if conn is None:
            logger.warning("Message from unknown client: %s", client_id)
            return
        try:
            msg_type, data = self._parse(raw)
            conn.is_alive = True
            if msg_type == "ping":
                await self.send_to_client(
                    client_id, {"type": "pong", "data": {"timestamp": _now_iso(), "clientId": client_id}}
                )
            elif msg_type == "pong":
                pass
            elif msg_type == "subscribe":
                channels = self._channels(data)
                conn.subscribed_channels.update(channels)
                conn.has_subscribed = True
                logger.info("Client %s subscribed to: %s", client_id, ", ".join(sorted(conn.subscribed_channels)))
                await self.send_to_client(
                    client_id,
                    {"type": "subscription_confirmed", "data": {"channels": sorted(conn.subscribed_channels)}},
                )
            elif msg_type == "unsubscribe":
                channels = self._channels(data)
                conn.subscribed_channels.difference_update(channels)
                logger.info("Client %s unsubscribed from: %s", client_id, ", ".join(channels))
                await self.send_to_client(
                    client_id, {"type": "unsubscription_confirmed", "data": {"channels": channels}}
                )
            elif msg_type == "request_metrics":
                await self.send_to_client(
                    client_id,
                    {
                        "type": "metrics_request_received",
                        "data": {"requestId": data.get("requestId"), "timestamp": _now_iso()},
                    },
                )
            else:
                logger.warning("Unknown message type from %s: %s", client_id, msg_type)
                await self.send_to_client(
                    client_id, {"type": "error", "data": {"message": "Unknown message type", "type": msg_type}}
                )
        except ProtocolError as exc:
            await self.send_to_client(client_id, {"type": "error", "data": {"message": str(exc)}})

    @staticmethod
    def _parse(raw):
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            raise ProtocolError("Invalid message format") from None
        if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
            raise ProtocolError("Invalid message format")
        data = msg.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ProtocolError("Invalid message format")
        return msg["type"], data

    @staticmethod
    def _channels(data: Dict[str, Any]) -> List[str]:
        channels = data.get("channels")
        if not isinstance(channels, list) or not all(isinstance(c, str) for c in channels):
            raise ProtocolError("channels must be a list of strings")
        return channels

    # -------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------

    async def heartbeat(self) -> List[str]:
        """One heartbeat round. Returns the ids evicted in this round."""
        dead = []
        for conn in list(self.clients.values()):
            if not conn.is_alive:
                dead.append(conn.id)
                await self._evict(conn, "missed heartbeat")
                continue
            # cleared here, set again by the next inbound frame
            conn.is_alive = False
        if dead:
            logger.info("Cleaned up %d dead WebSocket clients", len(dead))
        return dead

    def start_heartbeat(self) -> bool:
        if self._heartbeat is None:
            self._heartbeat = PeriodicTask("ws-heartbeat", self.heartbeat_interval, self.heartbeat)
        started = self._heartbeat.start()
        if started:
            logger.info("WebSocket heartbeat started (interval: %ss)", self.heartbeat_interval)
        return started

    def stop_heartbeat(self) -> bool:
        if self._heartbeat is None or not self._heartbeat.stop():
            return False
        logger.info("WebSocket heartbeat stopped")
        return True

    # -------------------------------------------------------
    # Stats / shutdown
    # -------------------------------------------------------

    def get_client_stats(self) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        by_channel: Dict[str, int] = {}
        for conn in self.clients.values():
            for channel in conn.subscribed_channels:
                by_channel[channel] = by_channel.get(channel, 0) + 1

        def describe(conn: Optional[SubscriberConnection]):
            if conn is None:
                return None
            return {
                "clientId": conn.id,
                "connectedAt": conn.connected_at.isoformat(),
                "durationSeconds": round((now - conn.connected_at).total_seconds(), 3),
            }

        ordered = sorted(self.clients.values(), key=lambda c: c.connected_at)
        return {
            "total_clients": len(self.clients),
            "clients_by_subscription": by_channel,
            "oldest_connection": describe(ordered[0] if ordered else None),
            "newest_connection": describe(ordered[-1] if ordered else None),
        }

    async def shutdown(self) -> None:
        self.stop_heartbeat()
        for conn in list(self.clients.values()):
            try:
                await conn.transport.close(NORMAL_CLOSURE, "Server shutting down")
            except Exception as exc:
                logger.debug("Close of client %s failed: %s", conn.id, exc)
        self.clients.clear()
        logger.info("WebSocket service shut down")
