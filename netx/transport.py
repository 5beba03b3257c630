"""File-based multiplexed stream transport.

Turns a :class:`~netx.channel.Channel` into independent, ordered,
bidirectional byte streams, one per connection id.

Architecture
------------
* **ConnectionRegistry** — the one piece of shared mutable state: every
  live connection id on this side, mapped to its :class:`ConnectionEntry`.
  Removal is idempotent and is the authoritative "this connection is
  gone" signal.  Anything the sweeper finds that is not in here is an
  orphan candidate.
* **ConnectionEntry** — per-connection state machine
  (``PENDING -> STREAMING -> ENDING -> CLOSED``) plus sequence counters
  and the outbound accumulation buffer.
* **StreamTransport** — v2.  Outbound bytes are buffered and
  materialised as numbered chunk files; a periodic *pump* flushes
  buffers and delivers inbound chunks to each entry's :class:`ChunkSink`
  in strict sequence order, whatever order the files show up in.
* **OrphanSweeper** — deletes files whose id nobody here tracks, once
  they have sat unclaimed for a grace period.
* **LegacyTransport** — v1.  One request file, one response file, no
  streaming.

Threading model
~~~~~~~~~~~~~~~
Everything runs on one asyncio event loop.  The pump and the sweeper
are plain synchronous passes driven by sleeping tasks, so an entry can
disappear between two ticks but never in the middle of one pass over
it.  Filesystem access is synchronous and treated as a fast local
operation; a failed read is simply retried on the next tick.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from enum import Enum
from typing import Callable, Iterator, Optional

from .channel import (
    Channel,
    Direction,
    ack_name,
    chunk_name,
    connection_id_of,
    end_name,
    request_name,
    response_name,
)
from .config import SessionConfig
from .envelope import (
    ACK_PAYLOAD,
    EndMarker,
    RequestEnvelope,
    ResponseEnvelope,
    decode_end,
    decode_response,
    encode_end,
    encode_request,
    new_connection_id,
)
from .errors import HandshakeTimeout, MalformedEnvelope, RegistrationError, StreamClosed
from .log import get_logger

logger = get_logger(__name__)


# ============================================================================
# Connection state
# ============================================================================


class Side(Enum):
    """Which process this transport runs in."""

    PROXY = "proxy"
    RELAY = "relay"

    @property
    def out_direction(self) -> Direction:
        return Direction.REQUEST if self is Side.PROXY else Direction.RESPONSE

    @property
    def in_direction(self) -> Direction:
        return self.out_direction.opposite


class ConnectionState(Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    ENDING = "ending"
    CLOSED = "closed"


class ConnectionEvent(Enum):
    ACK = "ack"
    CHUNK = "chunk"
    END_MARKER = "end_marker"
    CLOSE = "close"


_S = ConnectionState
_E = ConnectionEvent

TRANSITIONS: dict[tuple[ConnectionState, ConnectionEvent], ConnectionState] = {
    (_S.PENDING, _E.ACK): _S.STREAMING,
    (_S.PENDING, _E.CHUNK): _S.STREAMING,
    (_S.PENDING, _E.END_MARKER): _S.ENDING,
    (_S.PENDING, _E.CLOSE): _S.CLOSED,
    (_S.STREAMING, _E.ACK): _S.STREAMING,
    (_S.STREAMING, _E.CHUNK): _S.STREAMING,
    (_S.STREAMING, _E.END_MARKER): _S.ENDING,
    (_S.STREAMING, _E.CLOSE): _S.CLOSED,
    (_S.ENDING, _E.ACK): _S.ENDING,
    (_S.ENDING, _E.CHUNK): _S.ENDING,
    (_S.ENDING, _E.CLOSE): _S.CLOSED,
}


class ChunkSink:
    """Local destination for a connection's inbound bytes.

    ``deliver`` is called once per chunk, in sequence order.  ``close``
    is called exactly once when the connection goes away, with the
    terminal error if there was one.  Exceptions raised by ``deliver``
    close the connection with that error.
    """

    def deliver(self, data: bytes) -> None:
        raise NotImplementedError

    def close(self, error: Optional[str]) -> None:
        pass


class ConnectionEntry:
    """In-memory bookkeeping for one connection id on one side."""

    __slots__ = (
        "id",
        "sink",
        "label",
        "state",
        "seq_out",
        "seq_in",
        "out_buffer",
        "end_error",
        "end_max_seq",
        "close_error",
    )

    def __init__(
        self,
        cid: str,
        sink: Optional[ChunkSink] = None,
        label: str = "",
        state: ConnectionState = ConnectionState.PENDING,
    ):
        self.id = cid
        self.sink = sink
        self.label = label
        self.state = state
        self.seq_out = 0
        self.seq_in = 0
        self.out_buffer = bytearray()
        self.end_error: Optional[str] = None
        self.end_max_seq = 0
        self.close_error: Optional[str] = None

    def apply(self, event: ConnectionEvent) -> bool:
        """Advance the state machine.  Returns ``False`` if *event* is ignored."""
        new = TRANSITIONS.get((self.state, event))
        if new is None:
            return False
        self.state = new
        return True

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    @property
    def caught_up(self) -> bool:
        """End marker seen and every chunk it announced consumed."""
        return self.state is ConnectionState.ENDING and self.seq_in >= self.end_max_seq

    def __repr__(self) -> str:
        return f"<ConnectionEntry {self.id} {self.state.value} out={self.seq_out} in={self.seq_in}>"


class ConnectionRegistry:
    """Owned map of connection id -> :class:`ConnectionEntry`."""

    __slots__ = ("_entries",)

    def __init__(self) -> None:
        self._entries: dict[str, ConnectionEntry] = {}

    def add(self, entry: ConnectionEntry) -> ConnectionEntry:
        if entry.id in self._entries:
            raise KeyError(f"Connection {entry.id} already registered")
        self._entries[entry.id] = entry
        return entry

    def get(self, cid: str) -> Optional[ConnectionEntry]:
        return self._entries.get(cid)

    def remove(self, cid: str) -> Optional[ConnectionEntry]:
        return self._entries.pop(cid, None)

    def new_id(self) -> str:
        cid = new_connection_id()
        while cid in self._entries:
            cid = new_connection_id()
        return cid

    def __contains__(self, cid: object) -> bool:
        return cid in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ConnectionEntry]:
        # snapshot: handlers may close entries while we iterate
        return iter(list(self._entries.values()))


# ============================================================================
# Streaming (v2) transport
# ============================================================================


class StreamTransport:
    """Chunked, sequenced, bidirectional streams over a :class:`Channel`.

    The proxy side calls :meth:`open_tunnel_stream`; the relay side calls
    :meth:`accept`.  Both then use :meth:`send_chunk` /
    :meth:`close_stream`, and rely on :meth:`run` (or explicit
    :meth:`pump_once` calls) to move inbound chunks to their sinks.
    """

    def __init__(
        self,
        channel: Channel,
        registry: ConnectionRegistry,
        side: Side,
        config: SessionConfig,
    ):
        self.channel = channel
        self.registry = registry
        self.side = side
        self.config = config
        self.out_dir = side.out_direction
        self.in_dir = side.in_direction
        if side is Side.PROXY:
            self.flush_threshold = config.proxy_flush_threshold
            self.pump_interval = config.proxy_pump_interval
        else:
            self.flush_threshold = config.relay_flush_threshold
            self.pump_interval = config.relay_pump_interval

    # -- connection setup --------------------------------------------------

    async def open_tunnel_stream(self, envelope: RequestEnvelope, sink: ChunkSink) -> str:
        """Publish *envelope* and wait for the relay's Ack.

        Returns the new connection id.

        Raises
        ------
        RegistrationError
            If the envelope file could not be written.
        HandshakeTimeout
            If no Ack appeared within ``ack_timeout``.
        StreamClosed
            If the connection was closed (e.g. by an early end marker)
            while waiting.
        """
        cid = self.registry.new_id()
        envelope = envelope.with_id(cid)
        entry = self.registry.add(ConnectionEntry(cid, sink, label=envelope.url))

        try:
            self.channel.write_atomic(request_name(cid), encode_request(envelope))
        except OSError as e:
            self.close_stream(cid, f"Cannot write request envelope: {e}")
            raise RegistrationError(f"Cannot write request envelope: {e}") from e
        logger.info("Waiting for ACK on %s (%s)", cid, envelope.url)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.ack_timeout
        try:
            while True:
                if entry.closed:
                    raise StreamClosed(cid, entry.close_error)
                if self._take_ack(cid):
                    entry.apply(ConnectionEvent.ACK)
                    logger.debug("ACK received for %s", cid)
                    return cid
                if loop.time() >= deadline:
                    self.close_stream(cid, "Tunnel connection timeout")
                    raise HandshakeTimeout(f"No ACK for {envelope.url} within {self.config.ack_timeout:g}s")
                await asyncio.sleep(self.config.ack_poll_interval)
        except asyncio.CancelledError:
            self.close_stream(cid, "Cancelled")
            raise

    def _take_ack(self, cid: str) -> bool:
        name = ack_name(cid)
        try:
            if not self.channel.exists(name):
                return False
            self.channel.delete(name)
        except OSError:
            # leave it for the sweeper; the ack itself was seen
            pass
        return True

    def accept(self, cid: str, sink: ChunkSink, label: str = "") -> ConnectionEntry:
        """Relay side: register *cid* and write its Ack immediately.

        The Ack goes out before the outbound connection is known to
        work; a later egress failure surfaces through the end marker.
        """
        entry = self.registry.add(ConnectionEntry(cid, sink, label=label))
        try:
            self.channel.write_atomic(ack_name(cid), ACK_PAYLOAD)
        except OSError as e:
            self.close_stream(cid, "Failed to ACK")
            raise RegistrationError(f"Cannot write ack for {cid}: {e}") from e
        entry.apply(ConnectionEvent.ACK)
        return entry

    # -- outbound ----------------------------------------------------------

    def send_chunk(self, cid: str, data: bytes, flush_now: bool = False) -> None:
        """Queue *data* for *cid*.

        With ``flush_now`` the pending buffer is flushed first and *data*
        is written as a chunk of its own.  Otherwise *data* is flushed
        once the buffer reaches the side's threshold, or on the next
        pump tick.  Unknown or closed ids are ignored.
        """
        entry = self.registry.get(cid)
        if entry is None or entry.closed:
            return
        if flush_now:
            error = self._flush(entry)
            if error is None:
                entry.out_buffer += data
                error = self._flush(entry)
        else:
            entry.out_buffer += data
            error = None
            if len(entry.out_buffer) >= self.flush_threshold:
                error = self._flush(entry)
        if error:
            self.close_stream(cid, error)

    def flush(self, cid: str) -> None:
        entry = self.registry.get(cid)
        if entry is None:
            return
        error = self._flush(entry)
        if error:
            self.close_stream(cid, error)

    def _flush(self, entry: ConnectionEntry) -> Optional[str]:
        """Materialise the pending buffer as the next chunk file."""
        if entry.closed or not entry.out_buffer:
            return None
        data = bytes(entry.out_buffer)
        entry.out_buffer.clear()
        seq = entry.seq_out
        try:
            self.channel.write_atomic(chunk_name(self.out_dir, entry.id, seq), data)
        except OSError as e:
            logger.error("Failed to write chunk %d for %s: %s", seq, entry.id, e)
            return "File write error"
        entry.seq_out = seq + 1
        logger.trace("[%s] -> chunk %d (%d bytes)", entry.id, seq, len(data))
        return None

    def close_stream(self, cid: str, error: Optional[str] = None) -> None:
        """Flush, close the local sink, publish the end marker, forget *cid*.

        Idempotent: unknown or already-closed ids are a no-op.
        """
        entry = self.registry.get(cid)
        if entry is None or entry.closed:
            return

        flush_error = self._flush(entry)
        error = error or flush_error
        entry.apply(ConnectionEvent.CLOSE)
        entry.close_error = error

        if entry.sink is not None:
            try:
                entry.sink.close(error)
            except Exception as e:
                logger.debug("[%s] Sink close error: %s", cid, e)

        marker = EndMarker(max_seq=entry.seq_out, error=error)
        try:
            self.channel.write_atomic(end_name(self.out_dir, cid), encode_end(marker))
        except OSError as e:
            logger.warning("[%s] Cannot write end marker: %s", cid, e)

        self.registry.remove(cid)
        if error:
            logger.warning("Connection %s (%s) closed: %s", cid, entry.label, error)
        else:
            logger.debug("Connection %s (%s) closed", cid, entry.label)

    def close_all(self, error: Optional[str] = None) -> None:
        for entry in self.registry:
            self.close_stream(entry.id, error)

    # -- inbound -----------------------------------------------------------

    def pump_once(self) -> None:
        """One tick: flush every buffer, deliver every contiguous chunk."""
        for entry in self.registry:
            if entry.closed or entry.sink is None:
                continue

            error = self._flush(entry)
            if error:
                self.close_stream(entry.id, error)
                continue

            self._read_end_marker(entry)
            self._drain_chunks(entry)

            if entry.caught_up:
                self.close_stream(entry.id, entry.end_error)

    def _read_end_marker(self, entry: ConnectionEntry) -> None:
        if entry.state is ConnectionState.ENDING:
            return
        name = end_name(self.in_dir, entry.id)
        try:
            data = self.channel.read(name)
        except OSError:
            return
        if data is None:
            return
        try:
            marker = decode_end(data)
        except MalformedEnvelope as e:
            logger.debug("[%s] Unreadable end marker, retrying: %s", entry.id, e)
            return
        entry.end_error = marker.error
        entry.end_max_seq = marker.max_seq
        entry.apply(ConnectionEvent.END_MARKER)
        try:
            self.channel.delete(name)
        except OSError:
            pass
        logger.trace("[%s] end marker: maxSeq=%d error=%s", entry.id, marker.max_seq, marker.error)

    def _drain_chunks(self, entry: ConnectionEntry) -> None:
        assert entry.sink is not None
        while not entry.closed:
            name = chunk_name(self.in_dir, entry.id, entry.seq_in)
            try:
                data = self.channel.read(name)
            except OSError:
                # locked by the writer or the sync client; next tick
                break
            if data is None:
                break

            entry.seq_in += 1
            entry.apply(ConnectionEvent.CHUNK)
            try:
                self.channel.delete(name)
            except OSError:
                pass
            logger.trace("[%s] <- chunk %d (%d bytes)", entry.id, entry.seq_in - 1, len(data))

            try:
                entry.sink.deliver(data)
            except Exception as e:
                logger.debug("[%s] Sink error: %s", entry.id, e)
                self.close_stream(entry.id, f"Local write failed: {e}")
                return

    async def run(self) -> None:
        """Pump forever (until cancelled)."""
        while True:
            try:
                self.pump_once()
            except Exception:
                logger.error("Pump error: %s", traceback.format_exc())
            await asyncio.sleep(self.pump_interval)


# ============================================================================
# Orphan sweeper
# ============================================================================


class OrphanSweeper:
    """Garbage-collects files nobody on this side is going to claim.

    A file whose connection id is not in the registry is remembered with
    the time it was first seen; if the same file is still there once
    ``grace`` seconds have passed, it is deleted.  Files that vanish on
    their own are forgotten.
    """

    def __init__(
        self,
        channel: Channel,
        registry: ConnectionRegistry,
        grace: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.channel = channel
        self.registry = registry
        self.grace = grace
        self.clock = clock
        self.first_seen: dict[str, float] = {}

    def sweep_once(self, now: Optional[float] = None) -> list[str]:
        """Run one pass.  Returns the names that were deleted."""
        try:
            names = self.channel.list()
        except OSError as e:
            logger.debug("Sweep listing failed: %s", e)
            return []

        now = self.clock() if now is None else now
        deleted: list[str] = []

        for name in names:
            cid = connection_id_of(name)
            if cid is None:
                continue
            if cid in self.registry:
                self.first_seen.pop(name, None)
                continue

            first = self.first_seen.setdefault(name, now)
            if now - first < self.grace:
                continue
            try:
                self.channel.delete(name)
            except OSError as e:
                logger.debug("Cannot delete orphan %s: %s", name, e)
                continue
            self.first_seen.pop(name, None)
            deleted.append(name)

        present = set(names)
        for name in list(self.first_seen):
            if name not in present:
                del self.first_seen[name]

        if deleted:
            logger.debug("Swept %d orphan file(s)", len(deleted))
        return deleted

    async def run(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep_once()
            except Exception:
                logger.error("Sweep error: %s", traceback.format_exc())


# ============================================================================
# Legacy (v1) transport
# ============================================================================


class LegacyTransport:
    """Whole-message request/response over the channel (proxy side).

    The request body travels inside the envelope, the response comes
    back as one file.  Pending ids are kept in the registry so the
    sweeper leaves their files alone.
    """

    def __init__(self, channel: Channel, registry: ConnectionRegistry, config: SessionConfig):
        self.channel = channel
        self.registry = registry
        self.config = config

    async def request(self, envelope: RequestEnvelope) -> ResponseEnvelope:
        """Send *envelope* and wait for its :class:`ResponseEnvelope`.

        Raises
        ------
        RegistrationError
            If the request file cannot be written.
        HandshakeTimeout
            If no response arrives within ``legacy_timeout``.
        MalformedEnvelope
            If the response file cannot be decoded.
        """
        cid = self.registry.new_id()
        envelope = envelope.with_id(cid)
        entry = self.registry.add(ConnectionEntry(cid, label=envelope.url))
        req_name = request_name(cid)
        res_name = response_name(cid)

        try:
            try:
                self.channel.write_atomic(req_name, encode_request(envelope))
            except OSError as e:
                raise RegistrationError(f"Cannot write request: {e}") from e

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.config.legacy_timeout
            while True:
                try:
                    data = self.channel.read(res_name)
                except OSError:
                    data = None
                if data is not None:
                    try:
                        self.channel.delete(res_name)
                    except OSError:
                        pass
                    return decode_response(data)
                if loop.time() >= deadline:
                    try:
                        self.channel.delete(req_name)
                    except OSError:
                        pass
                    raise HandshakeTimeout("Timeout waiting for server")
                await asyncio.sleep(self.config.legacy_poll_interval)
        finally:
            entry.apply(ConnectionEvent.CLOSE)
            self.registry.remove(cid)
