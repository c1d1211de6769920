"""Stand-ins for the light controller hardware and the camera."""
import random
import socket
import threading
from logging import getLogger
from typing import Callable, Optional, Tuple

import numpy as np

from strobecam.channel import ACK_TOKEN, PONG_TOKEN, Command

_log = getLogger(__name__)


def make_fake_image(size: Tuple[int, int], lit: bool, ambient: int = 60, light: int = 120):
    """Grey frame with a bright square in the middle when ``lit``."""
    w, h = size
    img = np.full((h, w, 3), ambient, dtype=np.uint8)
    if lit:
        img[h // 4 : 3 * h // 4, w // 4 : 3 * w // 4, :] += np.uint8(light)
    return img


class FakeFrameSource:
    """Frame source whose content follows a light-state callable."""

    def __init__(
        self,
        size: Tuple[int, int] = (64, 48),
        light_state: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.size = size
        self.light_state = light_state if light_state is not None else (lambda: False)
        self.ready = True
        self.frames_served = 0

    def resize(self, size: Tuple[int, int]) -> None:
        self.size = size

    def get_frame(self) -> Optional[np.ndarray]:
        if not self.ready:
            return None
        self.frames_served += 1
        return make_fake_image(self.size, bool(self.light_state()))


class FakeLightRemote:
    """UDP server on loopback that behaves like the light controller firmware.

    Replies ACK to ON/OFF and PONG (echoing any probe tag) to PING after
    ``latency`` seconds, and drops each incoming datagram with probability
    ``drop_rate``. The light state changes ``latency`` seconds after the
    command arrives.
    """

    def __init__(
        self,
        latency: float = 0.0,
        drop_rate: float = 0.0,
        send_acks: bool = True,
        host: str = "127.0.0.1",
        seed: Optional[int] = None,
    ) -> None:
        self.latency = latency
        self.drop_rate = drop_rate
        self.send_acks = send_acks
        self._random = random.Random(seed)
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._sock.bind((host, 0))
        self._sock.settimeout(0.05)
        self._abort = threading.Event()
        self._lock = threading.Lock()
        self._t = None
        self.light_on = False
        self.received = []
        self.dropped = 0

    @property
    def address(self) -> Tuple[str, int]:
        return self._sock.getsockname()

    def _later(self, fn, *args) -> None:
        if self.latency <= 0:
            fn(*args)
            return
        timer = threading.Timer(self.latency, fn, args)
        timer.daemon = True
        timer.start()

    def _set_light(self, on: bool) -> None:
        self.light_on = on

    def _reply(self, text: str, sender) -> None:
        try:
            self._sock.sendto(text.encode("ascii"), sender)
        except OSError as e:
            _log.debug(f"Fake remote reply failed: {e}")

    def _handle(self, text: str, sender) -> None:
        token, _, tag = text.partition(" ")
        if token in (Command.ON.value, Command.OFF.value):
            self._later(self._set_light, token == Command.ON.value)
            if self.send_acks:
                self._later(self._reply, ACK_TOKEN, sender)
        elif token == Command.PING.value:
            self._later(self._reply, f"{PONG_TOKEN} {tag}" if tag else PONG_TOKEN, sender)
        elif token == Command.STOP.value:
            self._later(self._set_light, False)

    def _run(self):
        while not self._abort.is_set():
            try:
                data, sender = self._sock.recvfrom(1024)
            except socket.timeout:
                continue
            except OSError:
                break
            text = data.decode("ascii", errors="replace").strip()
            with self._lock:
                if self._random.random() < self.drop_rate:
                    self.dropped += 1
                    continue
                self.received.append(text)
            self._handle(text, sender)

    def start(self) -> None:
        self._abort.clear()
        self._t = threading.Thread(target=self._run, daemon=True)
        self._t.start()

    def stop(self) -> None:
        self._abort.set()
        if self._t is not None:
            self._t.join()
            self._t = None

    def close(self) -> None:
        self.stop()
        self._sock.close()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_traceback):
        self.close()
