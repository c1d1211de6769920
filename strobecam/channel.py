"""UDP command channel to the remote light controller.

The wire protocol is plain ASCII tokens, one per datagram, with no framing,
sequence numbers or checksums. Every command is idempotent on the remote side
("ON" twice is the same as "ON" once), so commands may be sent more than once
to ride out packet loss. Nothing here retries beyond that duplicate count.
"""
from __future__ import annotations

import selectors
import socket
import time
from dataclasses import dataclass
from enum import Enum
from logging import getLogger
from typing import Optional, Tuple

from strobecam.configuration import Endpoint

_log = getLogger(__name__)

ACK_TOKEN = "ACK"
PONG_TOKEN = "PONG"

_MAX_DATAGRAM = 1024


class Command(Enum):
    ON = "ON"
    OFF = "OFF"
    PING = "PING"
    STOP = "STOP"

    @classmethod
    def for_light(cls, on: bool) -> Command:
        return cls.ON if on else cls.OFF


def start_blink_payload(half_period_us: int, start_on: bool = True) -> str:
    """Payload asking the remote to free-run its own blink loop."""
    return f"START {int(half_period_us)} {1 if start_on else 0}"


@dataclass(frozen=True)
class Reply:
    text: str
    sender: Optional[Tuple[str, int]] = None
    received_at: float = 0.0

    @property
    def token(self) -> str:
        parts = self.text.split(maxsplit=1)
        return parts[0].upper() if parts else ""

    @property
    def tag(self) -> Optional[str]:
        parts = self.text.split(maxsplit=1)
        return parts[1].strip() if len(parts) > 1 else None

    def is_ack(self) -> bool:
        return self.token == ACK_TOKEN

    def is_pong(self) -> bool:
        """True for "PONG" or an echo of the probe itself."""
        return self.token in (PONG_TOKEN, Command.PING.value)


@dataclass
class ChannelStats:
    sent: int = 0
    send_errors: int = 0
    received: int = 0
    receive_errors: int = 0
    dropped: int = 0


class CommandChannel:
    """Owns a single non-blocking UDP socket aimed at a fixed endpoint.

    No other object may send or receive on the socket. Transport errors are
    logged and counted, never raised to the caller.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        duplicates: int = 2,
        bind: Optional[Tuple[str, int]] = None,
        clock=time.monotonic,
    ) -> None:
        self.endpoint = endpoint
        self.duplicates = duplicates
        self.stats = ChannelStats()
        self._clock = clock
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._sock.setblocking(False)
        if bind is not None:
            self._sock.bind(bind)
        self._selector = selectors.DefaultSelector()
        self._selector.register(self._sock, selectors.EVENT_READ)
        self.closed = False

    def __enter__(self) -> CommandChannel:
        return self

    def __exit__(self, exc_type, exc_value, exc_traceback) -> None:
        self.close()

    @property
    def local_address(self) -> Tuple[str, int]:
        return self._sock.getsockname()

    def send(self, command, duplicates: Optional[int] = None) -> int:
        """Send ``command`` (a Command or a raw str) ``duplicates`` times.

        Returns the number of datagrams handed to the OS.
        """
        payload = command.value if isinstance(command, Command) else str(command)
        data = payload.encode("ascii")
        count = self.duplicates if duplicates is None else duplicates

        if self.closed:
            _log.warning(f"Channel closed, dropping {payload!r}")
            self.stats.dropped += count
            return 0

        sent = 0
        for _ in range(count):
            try:
                self._sock.sendto(data, self.endpoint.as_tuple())
                sent += 1
            except OSError as e:
                self.stats.send_errors += 1
                _log.warning(f"Send {payload!r} to {self.endpoint} failed: {e}")
        self.stats.sent += sent
        self.stats.dropped += count - sent
        return sent

    def _read(self) -> Optional[Reply]:
        try:
            data, sender = self._sock.recvfrom(_MAX_DATAGRAM)
        except BlockingIOError:
            return None
        except OSError as e:
            # ICMP port unreachable shows up here on some platforms
            self.stats.receive_errors += 1
            _log.warning(f"Receive from {self.endpoint} failed: {e}")
            return None
        self.stats.received += 1
        text = data.decode("ascii", errors="replace").strip()
        return Reply(text, sender, self._clock())

    def try_receive(self) -> Optional[Reply]:
        """Return a queued reply, or None straight away if there is none."""
        if self.closed:
            return None
        return self._read()

    def receive_with_timeout(self, timeout: float) -> Optional[Reply]:
        """Block for up to ``timeout`` seconds waiting for a reply.

        Only latency probing uses this, never the per-frame path.
        """
        if self.closed:
            return None
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            if not self._selector.select(remaining):
                return None
            reply = self._read()
            if reply is not None:
                return reply

    def drain(self) -> int:
        """Discard everything already queued, returning how many were dropped."""
        count = 0
        while self.try_receive() is not None:
            count += 1
        if count:
            _log.debug(f"Drained {count} stale replies")
        return count

    def send_light(self, on: bool) -> int:
        return self.send(Command.for_light(on))

    def send_start_blink(self, half_period_us: int, start_on: bool = True) -> int:
        return self.send(start_blink_payload(half_period_us, start_on), duplicates=3)

    def send_stop(self) -> int:
        return self.send(Command.STOP, duplicates=2)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._selector.close()
        self._sock.close()
