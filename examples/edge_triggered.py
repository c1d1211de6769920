#!/usr/bin/python3
import time

import numpy as np

from strobecam import build_controller, initialize_logger
from strobecam.fake import FakeFrameSource, FakeLightRemote

initialize_logger(console_level=1)

with FakeLightRemote(latency=0.005) as remote:
    host, port = remote.address
    source = FakeFrameSource(light_state=lambda: remote.light_on)
    config = {"host": host, "port": port, "half_period_s": 0.05, "phase_compensation_ms": 15.0}
    controller = build_controller(config, source, mode="edge")

    means = []
    controller.add_pair_callback(
        lambda pair: means.append(float(np.mean(pair.on)) - float(np.mean(pair.off)))
    )
    controller.start()

    end = time.monotonic() + 2
    while time.monotonic() < end:
        controller.tick()
        time.sleep(0.005)

    controller.close()

print(f"{len(means)} pairs, mean ON-OFF difference {np.mean(means):.1f}")
