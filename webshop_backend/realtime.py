# webshop_backend/realtime.py
"""Live connection registry and push broadcasts.

Mutations never talk to sockets directly: they hand an envelope to
``Broadcaster.publish_*``, which only enqueues it. A background worker
drains the queue and fans the envelope out to the matching connections.
Connect and refresh snapshots go through the same queue, aimed at a single
connection, so each socket sees carts in the order they were queued.
Delivery is best effort; a connection that fails a send is closed and
dropped from the registry, and the envelope is not retried.
"""
import asyncio
import enum
import uuid
from typing import Dict, List, Optional

import structlog

from webshop_backend.db.schemas import CartSnapshot, Envelope, MessageKind
from webshop_backend.owners import CartOwner

logger = structlog.get_logger(__name__)

DEFAULT_QUEUE_SIZE = 1000


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Connection:
    """One live client socket, tagged with the owner whose cart it shows."""

    def __init__(self, websocket, owner: CartOwner):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.owner = owner
        self.state = ConnectionState.CONNECTING

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    async def open(self):
        if self.state is not ConnectionState.CONNECTING:
            raise RuntimeError(f"cannot open connection in state {self.state.value}")
        await self.websocket.accept()
        self.state = ConnectionState.OPEN

    def close(self):
        self.state = ConnectionState.CLOSED

    async def send(self, envelope: Envelope) -> bool:
        """Send if open. Returns False when the message was dropped."""
        if not self.is_open:
            return False
        await self.websocket.send_json(envelope.model_dump(mode="json"))
        return True

    def __repr__(self):
        return f"<Connection {self.id} owner={self.owner.key} state={self.state.value}>"


def cart_envelope(snapshot: CartSnapshot) -> Envelope:
    return Envelope(
        kind=MessageKind.cart_update,
        owner_scope=snapshot.owner,
        payload=snapshot.to_payload(),
    )


def inventory_envelope(product_id: int, in_stock: bool) -> Envelope:
    return Envelope(
        kind=MessageKind.inventory_update,
        payload={"product_id": product_id, "in_stock": in_stock},
    )


class Broadcaster:
    def __init__(self, max_queue: int = DEFAULT_QUEUE_SIZE):
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._worker: Optional[asyncio.Task] = None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self):
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="webshop-broadcaster")
        logger.info("Broadcaster started")

    async def stop(self):
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            connection.close()
        logger.info("Broadcaster stopped", dropped_connections=len(connections))

    async def connect(self, websocket, owner: CartOwner) -> Connection:
        """Accept the socket and register it. CONNECTING -> OPEN."""
        connection = Connection(websocket, owner)
        await connection.open()
        async with self._lock:
            self._connections[connection.id] = connection
        logger.info("Client connected", connection_id=connection.id, owner=owner.key,
                    connections=self.connection_count)
        return connection

    async def disconnect(self, connection: Connection):
        """Transport went away. OPEN -> CLOSED, and forget it."""
        connection.close()
        async with self._lock:
            removed = self._connections.pop(connection.id, None)
        if removed is not None:
            logger.info("Client disconnected", connection_id=connection.id,
                        owner=connection.owner.key, connections=self.connection_count)

    async def connections_for(self, owner: Optional[CartOwner] = None) -> List[Connection]:
        async with self._lock:
            connections = list(self._connections.values())
        if owner is None:
            return connections
        return [c for c in connections if c.owner.key == owner.key]

    def publish_cart(self, snapshot: CartSnapshot):
        self._enqueue(cart_envelope(snapshot))

    def publish_inventory(self, product_id: int, in_stock: bool):
        self._enqueue(inventory_envelope(product_id, in_stock))

    def publish_snapshot(self, connection: Connection, snapshot: CartSnapshot):
        """Queue a cart for one connection only (on connect or refresh)."""
        self._enqueue(cart_envelope(snapshot), target=connection)

    def _enqueue(self, envelope: Envelope, target: Optional[Connection] = None):
        try:
            self._queue.put_nowait((envelope, target))
        except asyncio.QueueFull:
            logger.warning("Broadcast queue full, dropping envelope",
                           kind=envelope.kind.value, owner_scope=envelope.owner_scope)

    async def flush(self):
        """Wait until every queued envelope has been delivered."""
        await self._queue.join()

    async def deliver(self, envelope: Envelope) -> int:
        """Fan an envelope out. Returns how many connections received it."""
        if envelope.kind is MessageKind.cart_update:
            targets = [c for c in await self.connections_for() if c.owner.key == envelope.owner_scope]
        else:
            targets = await self.connections_for()

        delivered = 0
        for connection in targets:
            if await self._send(connection, envelope):
                delivered += 1
        logger.debug("Broadcast delivered", kind=envelope.kind.value,
                     owner_scope=envelope.owner_scope, targets=len(targets), delivered=delivered)
        return delivered

    async def _send(self, connection: Connection, envelope: Envelope) -> bool:
        try:
            sent = await connection.send(envelope)
        except Exception as e:
            logger.warning("Send failed, dropping connection", connection_id=connection.id,
                           owner=connection.owner.key, error=str(e))
            await self.disconnect(connection)
            return False
        if not sent:
            logger.debug("Skipping non-open connection", connection_id=connection.id,
                         state=connection.state.value)
        return sent

    async def _run(self):
        while True:
            envelope, target = await self._queue.get()
            try:
                if target is None:
                    await self.deliver(envelope)
                else:
                    await self._send(target, envelope)
            except Exception:
                logger.exception("Broadcast delivery failed", kind=envelope.kind.value)
            finally:
                self._queue.task_done()
