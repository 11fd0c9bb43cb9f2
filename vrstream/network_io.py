import queue
import socket
import threading
import logging
from typing import Callable, Dict, List, Optional, Tuple

from .protocol import HEADER_SIZE, MalformedHeader
from .reassembly import DEFAULT_STREAM_BUFFER_BYTES, Delivery, make_reassembler
from .receive_engine import FrameTracker, UplinkReceiver
from .scheduler import monotonic_ms

logger = logging.getLogger(__name__)

MAX_DATAGRAM = 65535
STREAM_READ_SIZE = 65536
POLL_INTERVAL_SEC = 0.1

DOWNLINK = "downlink"
UPLINK = "uplink"
CLOSED = "closed"


class DatagramSender:
    """Fire-and-forget UDP sender; one datagram per unit."""

    def __init__(self, dest_addr: Tuple[str, int]):
        self.dest_addr = dest_addr
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, 4 * 1024 * 1024)

    def send(self, unit: bytes) -> bool:
        try:
            self.socket.sendto(unit, self.dest_addr)
            return True
        except OSError as e:
            logger.error("Failed to send %d bytes to %s: %s", len(unit), self.dest_addr, e)
            return False

    def close(self) -> None:
        self.socket.close()


class StreamSender:
    """Fire-and-forget sender over one connected TCP socket."""

    def __init__(self, dest_addr: Tuple[str, int], connect_timeout: float = 5.0):
        self.dest_addr = dest_addr
        self.socket = socket.create_connection(dest_addr, timeout=connect_timeout)
        self.socket.settimeout(None)
        self.socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

    def send(self, unit: bytes) -> bool:
        try:
            self.socket.sendall(unit)
            return True
        except OSError as e:
            logger.error("Failed to send %d bytes to %s: %s", len(unit), self.dest_addr, e)
            return False

    def close(self) -> None:
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.socket.close()


class ReceiverService:
    """
    Socket front end for a FrameTracker (and optionally an UplinkReceiver).

    I/O threads only timestamp what they read and put it on one queue. A
    single consumer thread owns the reassemblers and the receivers, so every
    header reaches the tracker through one serialized entry point. Each
    stream connection gets its own reassembler.
    """

    def __init__(
        self,
        delivery: Delivery,
        tracker: FrameTracker,
        port: int = 0,
        uplink_receiver: Optional[UplinkReceiver] = None,
        uplink_port: int = 0,
        fragment_payload_bytes: int = 1200,
        stream_buffer_bytes: int = DEFAULT_STREAM_BUFFER_BYTES,
        frame_expiry_ms: Optional[int] = None,
        clock: Callable[[], int] = monotonic_ms,
        host: str = "0.0.0.0",
    ):
        self.delivery = delivery
        self.tracker = tracker
        self.uplink_receiver = uplink_receiver
        self.host = host
        self.requested_port = port
        self.requested_uplink_port = uplink_port
        self.fragment_payload_bytes = fragment_payload_bytes
        self.stream_buffer_bytes = stream_buffer_bytes
        block_size = HEADER_SIZE + fragment_payload_bytes
        if delivery is Delivery.STREAM and stream_buffer_bytes < block_size:
            raise ValueError(
                f"stream buffer of {stream_buffer_bytes} bytes cannot hold one {block_size}-byte block"
            )
        # A read never overflows the leftover of a partial block.
        self.read_size = max(1, min(STREAM_READ_SIZE, stream_buffer_bytes - block_size + 1))
        self.frame_expiry_ms = frame_expiry_ms
        self.clock = clock

        self.running = False
        self.socket: Optional[socket.socket] = None
        self.uplink_socket: Optional[socket.socket] = None
        self._inbox: "queue.Queue[tuple]" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._reassemblers: Dict[object, object] = {}
        self._last_expiry_ms = 0

    # ------------------------------------------------------------------

    @property
    def port(self) -> int:
        return self.socket.getsockname()[1] if self.socket else self.requested_port

    @property
    def uplink_port(self) -> int:
        if self.uplink_socket:
            return self.uplink_socket.getsockname()[1]
        return self.requested_uplink_port

    def start(self) -> None:
        """Bind sockets and start the I/O and consumer threads."""
        try:
            if self.delivery is Delivery.STREAM:
                self.socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                self.socket.bind((self.host, self.requested_port))
                self.socket.listen()
                self.socket.settimeout(POLL_INTERVAL_SEC)
                io_target = self._accept_loop
            else:
                self.socket = self._bind_datagram(self.requested_port)
                io_target = self._datagram_loop

            self.running = True
            self._spawn(io_target, self.socket, DOWNLINK)

            if self.uplink_receiver is not None:
                self.uplink_socket = self._bind_datagram(self.requested_uplink_port)
                self._spawn(self._datagram_loop, self.uplink_socket, UPLINK)

            self._spawn(self._consume_loop)
            logger.info(
                "Receiver service started (%s) on port %d", self.delivery.value, self.port
            )
        except OSError as e:
            logger.error("Failed to start receiver service: %s", e)
            self.stop()
            raise

    def stop(self) -> None:
        """Stop I/O, drain what was already read, and finalize the tracker."""
        self.running = False
        for t in self._threads:
            t.join(timeout=1.0)
        self._threads = []

        for sock in (self.socket, self.uplink_socket):
            if sock:
                sock.close()

        try:
            self._drain()
        finally:
            self.tracker.finalize()
            logger.info("Receiver service stopped")

    # ------------------------------------------------------------------

    def _bind_datagram(self, port: int) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4 * 1024 * 1024)
        sock.bind((self.host, port))
        sock.settimeout(POLL_INTERVAL_SEC)
        return sock

    def _spawn(self, target, *args) -> None:
        thread = threading.Thread(target=target, args=args, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _datagram_loop(self, sock: socket.socket, kind: str) -> None:
        while self.running:
            try:
                data, addr = sock.recvfrom(MAX_DATAGRAM)
                self._inbox.put((kind, addr, data, self.clock()))
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error("Error in %s receive loop: %s", kind, e)

    def _accept_loop(self, sock: socket.socket, kind: str) -> None:
        while self.running:
            try:
                conn, addr = sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error("Error accepting stream connection: %s", e)
                continue
            logger.info("Accepted stream connection from %s", addr)
            conn.settimeout(POLL_INTERVAL_SEC)
            self._spawn(self._stream_loop, conn, addr)

    def _stream_loop(self, conn: socket.socket, addr) -> None:
        try:
            while self.running:
                try:
                    data = conn.recv(self.read_size)
                except socket.timeout:
                    continue
                if not data:
                    break
                self._inbox.put((DOWNLINK, addr, data, self.clock()))
        except OSError as e:
            if self.running:
                logger.error("Error reading stream from %s: %s", addr, e)
        finally:
            conn.close()
            self._inbox.put((CLOSED, addr, b"", self.clock()))

    # ------------------------------------------------------------------

    def _consume_loop(self) -> None:
        while self.running:
            try:
                item = self._inbox.get(timeout=POLL_INTERVAL_SEC)
            except queue.Empty:
                self._maybe_expire()
                continue
            try:
                self._dispatch(*item)
            except MalformedHeader:
                logger.exception("Framing invariant violated, stopping receiver service")
                self.running = False
                raise
            self._maybe_expire()

    def _drain(self) -> None:
        while True:
            try:
                item = self._inbox.get_nowait()
            except queue.Empty:
                return
            self._dispatch(*item)

    def _dispatch(self, kind: str, source, data: bytes, arrival_ms: int) -> None:
        if kind == UPLINK:
            self.uplink_receiver.process_sample(data, arrival_ms)
        elif kind == CLOSED:
            reassembler = self._reassemblers.pop(source, None)
            if reassembler is not None and reassembler.buffered:
                logger.warning(
                    "Stream from %s closed with %d unframed bytes", source, reassembler.buffered
                )
        else:
            self._reassembler_for(source).feed(data, arrival_ms)

    def _reassembler_for(self, source):
        # Datagrams carry their own boundaries, so one reassembler serves all senders.
        key = source if self.delivery is Delivery.STREAM else None
        reassembler = self._reassemblers.get(key)
        if reassembler is None:
            reassembler = make_reassembler(
                self.delivery,
                self.tracker.process_fragment,
                fragment_payload_bytes=self.fragment_payload_bytes,
                capacity=self.stream_buffer_bytes,
            )
            self._reassemblers[key] = reassembler
        return reassembler

    def _maybe_expire(self) -> None:
        if not self.frame_expiry_ms:
            return
        now_ms = self.clock()
        if now_ms - self._last_expiry_ms < self.frame_expiry_ms:
            return
        self._last_expiry_ms = now_ms
        self.tracker.expire(now_ms, self.frame_expiry_ms)
