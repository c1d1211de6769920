from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, fields, replace
from logging import getLogger
from pathlib import Path
from typing import Any, Dict, Union

from strobecam.exceptions import ConfigurationError

_log = getLogger(__name__)

DEFAULT_HOST = "192.168.4.1"
DEFAULT_PORT = 4210

# Upper bound for the subtraction threshold, at startup and on a live change
MAX_THRESHOLD = 0.3


def _assert_type(name: str, thing: Any, type_) -> None:
    if isinstance(thing, bool) and type_ is not bool:
        raise ConfigurationError(f"{name}={thing!r} should be a {type_} not a bool")
    if not isinstance(thing, type_):
        raise ConfigurationError(
            f"{name}={thing!r} should be a {type_} not {type(thing)}"
        )


def _assert_range(name: str, value, lo=None, hi=None) -> None:
    if isinstance(value, float) and not math.isfinite(value):
        raise ConfigurationError(f"{name} must be finite, got {value}")
    if lo is not None and value < lo:
        raise ConfigurationError(f"{name} must be >= {lo}, got {value}")
    if hi is not None and value > hi:
        raise ConfigurationError(f"{name} must be <= {hi}, got {value}")


@dataclass(frozen=True)
class Endpoint:
    """Address of the remote light controller. Immutable once built."""

    host: str
    port: int

    def __post_init__(self) -> None:
        _assert_type("host", self.host, str)
        if not self.host:
            raise ConfigurationError("Endpoint host must not be empty")
        _assert_type("port", self.port, int)
        _assert_range("port", self.port, 1, 65535)

    @classmethod
    def parse(cls, text: str, default_port: int = DEFAULT_PORT) -> Endpoint:
        """Build an endpoint from ``"host:port"`` or a bare ``"host"``."""
        if not isinstance(text, str) or not text.strip():
            raise ConfigurationError(f"Cannot parse endpoint from {text!r}")
        host, sep, port = text.strip().rpartition(":")
        if not sep:
            return cls(text.strip(), default_port)
        try:
            port_number = int(port)
        except ValueError:
            raise ConfigurationError(f"Bad port in endpoint {text!r}") from None
        return cls(host, port_number)

    def as_tuple(self):
        return (self.host, self.port)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class SyncConfig:
    """Everything the synchronization controllers can be tuned with.

    Values are checked when the object is built, so an instance that exists is
    usable. The live tunables (margins, phase compensation, threshold) can also
    be changed on a running controller through its setters.
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    duplicate_sends: int = 2

    # Delay policy, all in milliseconds.
    baseline_ms: float = 20.0
    safety_margin_ms: float = 40.0
    min_delay_ms: float = 10.0
    max_delay_ms: float = 500.0

    # Ack-gated variant.
    exposure_margin_ms: float = 30.0
    ack_timeout_s: float = 0.25

    # Latency probing.
    probe_batch_size: int = 5
    probe_timeout_s: float = 0.2
    tag_probes: bool = False
    ping_hz: float = 0.0
    auto_measure: bool = True

    # Edge-triggered variant.
    phase_compensation_ms: float = 40.0
    half_period_s: float = 0.033333

    threshold: float = 0.05
    min_frame_size: int = 32
    tick_hz: float = 90.0

    def __post_init__(self) -> None:
        self.check()

    def check(self) -> None:
        """Raise ConfigurationError if any field is unusable."""
        # Endpoint does its own validation
        self.endpoint

        for name in ("duplicate_sends", "probe_batch_size", "min_frame_size"):
            _assert_type(name, getattr(self, name), int)
        for name in (
            "baseline_ms",
            "safety_margin_ms",
            "min_delay_ms",
            "max_delay_ms",
            "exposure_margin_ms",
            "ack_timeout_s",
            "probe_timeout_s",
            "ping_hz",
            "phase_compensation_ms",
            "half_period_s",
            "threshold",
            "tick_hz",
        ):
            _assert_type(name, getattr(self, name), (int, float))
        for name in ("tag_probes", "auto_measure"):
            _assert_type(name, getattr(self, name), bool)

        _assert_range("duplicate_sends", self.duplicate_sends, 1, 5)
        _assert_range("baseline_ms", self.baseline_ms, 0)
        _assert_range("safety_margin_ms", self.safety_margin_ms)
        _assert_range("min_delay_ms", self.min_delay_ms, 0)
        _assert_range("max_delay_ms", self.max_delay_ms, self.min_delay_ms)
        _assert_range("exposure_margin_ms", self.exposure_margin_ms, 0, 100)
        _assert_range("probe_batch_size", self.probe_batch_size, 1)
        _assert_range("phase_compensation_ms", self.phase_compensation_ms, 0, 200)
        _assert_range("threshold", self.threshold, 0, MAX_THRESHOLD)
        _assert_range("ping_hz", self.ping_hz, 0, 10)
        _assert_range("min_frame_size", self.min_frame_size, 1)
        for name in ("ack_timeout_s", "probe_timeout_s", "half_period_s", "tick_hz"):
            value = getattr(self, name)
            _assert_range(name, value)
            if value <= 0:
                raise ConfigurationError(f"{name} must be > 0, got {value}")

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(self.host, self.port)

    def make_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def replace(self, **changes) -> SyncConfig:
        """Return a checked copy with ``changes`` applied."""
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> SyncConfig:
        """Build a config from a dict, accepting ``endpoint="host:port"`` as well."""
        values = dict(values)
        if "endpoint" in values:
            endpoint = Endpoint.parse(values.pop("endpoint"))
            values.setdefault("host", endpoint.host)
            values.setdefault("port", endpoint.port)

        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**values)

    @classmethod
    def load(cls, path: Union[str, Path]) -> SyncConfig:
        """Load a JSON configuration file."""
        path = Path(path)
        try:
            values = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Cannot parse {path}: {e}") from e
        if not isinstance(values, dict):
            raise ConfigurationError(f"{path} must contain a JSON object")
        _log.debug(f"Loaded configuration from {path}")
        return cls.from_dict(values)

    def save(self, path: Union[str, Path]) -> None:
        Path(path).write_text(json.dumps(self.make_dict(), indent=2))
