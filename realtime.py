"""
Real-time event channel: presence tracking and live message delivery.

Frames are JSON envelopes ``{"event": <name>, "data": <payload>}``. Live
delivery is at-most-once; every message is persisted first, and fetching the
conversation over HTTP is what actually guarantees the receiver sees it.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.requests import HTTPConnection

from database import create_document, get_db, to_collection_name
from schemas import Message, User

logger = logging.getLogger(__name__)

router = APIRouter()


@dataclass
class Connection:
    websocket: Any
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    email: Optional[str] = None


class ConnectionRegistry:
    """Open connections plus the presence map (email -> connection id).

    Owned by the application; it starts empty and nothing survives a restart.
    Binding an email that is already mapped replaces the previous entry.
    """

    def __init__(self):
        self.connections: Dict[str, Connection] = {}
        self.presence: Dict[str, str] = {}

    def add(self, websocket: Any) -> Connection:
        connection = Connection(websocket=websocket)
        self.connections[connection.id] = connection
        return connection

    def bind(self, email: str, connection: Connection) -> None:
        connection.email = email
        self.presence[email] = connection.id

    def remove(self, connection: Connection) -> Optional[str]:
        """Forget ``connection`` and return the email it was identified as."""
        self.connections.pop(connection.id, None)
        if connection.email:
            self.presence.pop(connection.email, None)
        return connection.email

    def lookup(self, email: str) -> Optional[Connection]:
        connection_id = self.presence.get(email)
        if connection_id is None:
            return None
        return self.connections.get(connection_id)

    def clear(self) -> None:
        self.connections.clear()
        self.presence.clear()

    async def emit(self, connection: Connection, event: str, data: Any) -> bool:
        try:
            await connection.websocket.send_json({"event": event, "data": jsonable_encoder(data)})
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.warning("Dropped %s for connection %s: %s", event, connection.id, e)
            return False
        return True

    async def emit_to(self, email: str, event: str, data: Any) -> bool:
        connection = self.lookup(email)
        if connection is None:
            return False
        return await self.emit(connection, event, data)

    async def broadcast(self, event: str, data: Any, exclude: Optional[Connection] = None) -> None:
        for connection in list(self.connections.values()):
            if exclude is not None and connection.id == exclude.id:
                continue
            await self.emit(connection, event, data)


def get_registry(conn: HTTPConnection) -> ConnectionRegistry:
    return conn.app.state.registry


def message_payload(doc: dict) -> dict:
    return {
        "sender": doc["sender"],
        "receiver": doc["receiver"],
        "message": doc["message"],
        "timestamp": doc["timestamp"],
    }


async def deliver_message(registry: ConnectionRegistry, doc: dict) -> bool:
    """Push a persisted message to its receiver if they are connected."""
    delivered = await registry.emit_to(doc["receiver"], "receive-message", message_payload(doc))
    if delivered:
        logger.debug("Live-delivered message to %s", doc["receiver"])
    return delivered


def _set_presence(db: Database, email: str, online: bool) -> None:
    db[to_collection_name(User)].update_one(
        {"email": email},
        {"$set": {"isOnline": online, "lastSeen": datetime.now(timezone.utc)}},
    )


async def on_user_connected(db: Database, registry: ConnectionRegistry, connection: Connection, email: Any) -> None:
    if not isinstance(email, str) or not email:
        logger.warning("Ignoring user-connected without an email on %s", connection.id)
        return
    registry.bind(email, connection)
    await run_in_threadpool(_set_presence, db, email, True)
    await registry.broadcast("user-online", email, exclude=connection)
    logger.info("User %s connected", email)


async def on_send_message(db: Database, registry: ConnectionRegistry, connection: Connection, data: Any) -> None:
    try:
        payload = data if isinstance(data, dict) else {}
        message = Message(
            sender=payload.get("sender"),
            receiver=payload.get("receiver"),
            message=payload.get("message"),
        )
        doc = await run_in_threadpool(create_document, db, to_collection_name(Message), message)
    except (ValidationError, PyMongoError):
        logger.exception("Error sending message from connection %s", connection.id)
        await registry.emit(connection, "message-error", {"error": "Failed to send message"})
        return

    await deliver_message(registry, doc)
    await registry.emit(connection, "message-sent", message_payload(doc))
    logger.info("Message sent from %s to %s", doc["sender"], doc["receiver"])


async def on_disconnect(db: Database, registry: ConnectionRegistry, connection: Connection) -> None:
    email = registry.remove(connection)
    if not email:
        return
    try:
        await run_in_threadpool(_set_presence, db, email, False)
    except PyMongoError:
        logger.exception("Failed to mark %s offline", email)
    await registry.broadcast("user-offline", email)
    logger.info("User %s disconnected", email)


HANDLERS = {
    "user-connected": on_user_connected,
    "send-message": on_send_message,
}


@router.websocket("/ws")
async def event_channel(
    websocket: WebSocket,
    db: Database = Depends(get_db),
    registry: ConnectionRegistry = Depends(get_registry),
):
    await websocket.accept()
    connection = registry.add(websocket)
    logger.info("Connection opened: %s", connection.id)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            try:
                envelope = json.loads(message.get("text") or "")
            except ValueError:
                logger.warning("Ignoring malformed frame on %s", connection.id)
                continue
            event = envelope.get("event") if isinstance(envelope, dict) else None
            handler = HANDLERS.get(event)
            if handler is None:
                logger.warning("Ignoring unknown event %r on %s", event, connection.id)
                continue
            await handler(db, registry, connection, envelope.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        await on_disconnect(db, registry, connection)
