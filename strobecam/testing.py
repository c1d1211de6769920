from collections import deque
from concurrent.futures import Future, TimeoutError
from threading import Thread
from typing import Deque, Iterable, List, Optional
from unittest.mock import Mock

from strobecam.channel import ACK_TOKEN, PONG_TOKEN, ChannelStats, Command, Reply
from strobecam.configuration import Endpoint
from strobecam.frame import FramePair


class FakeClock:
    """Manually advanced clock, callable like ``time.monotonic``."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class ScriptedChannel:
    """In-memory stand-in for ``CommandChannel``.

    Everything sent is recorded in ``sent``. With ``auto_ack`` every ON/OFF
    datagram queues one ACK, the way the firmware answers each duplicate.
    Probe replies follow ``script_rtts``: each PING takes the next RTT (in ms,
    None for a lost reply). ``receive_with_timeout`` advances the clock by that
    much; ``try_receive`` hands the reply over once the clock has got there.
    """

    def __init__(self, clock: Optional[FakeClock] = None, duplicates: int = 2, auto_ack=False):
        self.endpoint = Endpoint("127.0.0.1", 4210)
        self.duplicates = duplicates
        self.clock = clock if clock is not None else FakeClock()
        self.auto_ack = auto_ack
        self.stats = ChannelStats()
        self.sent: List[str] = []
        self.inbox: Deque[str] = deque()
        self._rtts: Deque[Optional[float]] = deque()
        self._pending: Deque[tuple] = deque()
        self.closed = False

    def script_rtts(self, rtts: Iterable[Optional[float]]) -> None:
        self._rtts.extend(rtts)

    def queue(self, *texts: str) -> None:
        self.inbox.extend(texts)

    def send(self, command, duplicates: Optional[int] = None) -> int:
        payload = command.value if isinstance(command, Command) else str(command)
        count = self.duplicates if duplicates is None else duplicates
        if self.closed:
            return 0
        for _ in range(count):
            self.sent.append(payload)
            token, _, tag = payload.partition(" ")
            if token == Command.PING.value:
                rtt = self._rtts.popleft() if self._rtts else None
                due = None if rtt is None else self.clock() + rtt / 1000.0
                self._pending.append((due, tag))
            elif self.auto_ack and token in (Command.ON.value, Command.OFF.value):
                self.inbox.append(ACK_TOKEN)
        self.stats.sent += count
        return count

    def _pong(self, tag: str) -> Reply:
        return Reply(f"{PONG_TOKEN} {tag}" if tag else PONG_TOKEN, None, self.clock())

    def try_receive(self) -> Optional[Reply]:
        if self.closed:
            return None
        if self.inbox:
            return Reply(self.inbox.popleft(), None, self.clock())
        # Lost replies never arrive
        while self._pending and self._pending[0][0] is None:
            self._pending.popleft()
        if self._pending and self._pending[0][0] <= self.clock():
            _, tag = self._pending.popleft()
            return self._pong(tag)
        return None

    def receive_with_timeout(self, timeout: float) -> Optional[Reply]:
        if self.inbox:
            return self.try_receive()
        due, tag = self._pending.popleft() if self._pending else (None, "")
        if due is None or due - self.clock() > timeout:
            self.clock.advance(timeout)
            return None
        self.clock.advance(max(0.0, due - self.clock()))
        return self._pong(tag)

    def drain(self) -> int:
        count = len(self.inbox)
        self.inbox.clear()
        return count

    def send_light(self, on: bool) -> int:
        return self.send(Command.for_light(on))

    def close(self) -> None:
        self.closed = True

    def sent_commands(self) -> List[str]:
        """``sent`` with consecutive duplicates collapsed."""
        collapsed = []
        for payload in self.sent:
            if not collapsed or collapsed[-1] != payload:
                collapsed.append(payload)
        return collapsed


def run_ticks(controller, clock: FakeClock, n_ticks: int, dt: float = 0.011) -> int:
    """Tick ``controller`` ``n_ticks`` times, ``dt`` apart. Returns ticks processed."""
    processed = 0
    for _ in range(n_ticks):
        clock.advance(dt)
        if controller.tick():
            processed += 1
    return processed


def mature_after_pairs_or_timeout(controller, n_pairs: int, timeout_seconds=5) -> Future:
    """Return a future that matures after ``n_pairs`` frame pairs, or times out."""
    future = Future()
    future.set_running_or_notify_cancel()
    mock = Mock()

    def timeout_thread():
        try:
            future.result(timeout=timeout_seconds)
        except TimeoutError as e:
            controller.remove_pair_callback(callback)
            if not future.done():
                future.set_exception(e)

    def callback(pair: FramePair):
        mock(pair)
        if mock.call_count == n_pairs and not future.done():
            future.set_result(pair.cycle)
            controller.remove_pair_callback(callback)

    controller.add_pair_callback(callback)
    Thread(target=timeout_thread, daemon=True).start()
    return future
