import importlib.metadata

from strobecam.blink import BlinkDriver
from strobecam.buffer import PairedFrameBuffer
from strobecam.channel import Command, CommandChannel, Reply
from strobecam.configuration import Endpoint, SyncConfig
from strobecam.controller import (
    AckGatedController,
    DisabledController,
    EdgeTriggeredCapture,
    EstimatedDelayController,
    build_controller,
)
from strobecam.exceptions import (
    ConfigurationError,
    MeasurementInProgressError,
    StrobeCamError,
)
from strobecam.frame import FramePair, FrameSource, Slot
from strobecam.latency import LatencyEstimator, MeasurementResult
from strobecam.logger import initialize_logger
from strobecam.loop import SyncLoop
from strobecam.phases import EdgeRecord
from strobecam.timing import TimingSnapshot, TimingState, compute_total_wait

__all__ = [
    "AckGatedController",
    "BlinkDriver",
    "Command",
    "CommandChannel",
    "ConfigurationError",
    "DisabledController",
    "EdgeRecord",
    "EdgeTriggeredCapture",
    "Endpoint",
    "EstimatedDelayController",
    "FramePair",
    "FrameSource",
    "LatencyEstimator",
    "MeasurementInProgressError",
    "MeasurementResult",
    "PairedFrameBuffer",
    "Reply",
    "Slot",
    "StrobeCamError",
    "SyncConfig",
    "SyncLoop",
    "TimingSnapshot",
    "TimingState",
    "build_controller",
    "compute_total_wait",
    "initialize_logger",
]

__version__ = importlib.metadata.version(__package__ or __name__)
