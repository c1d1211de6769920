#!/usr/bin/python3
import sys

from strobecam import CommandChannel, Endpoint, LatencyEstimator, TimingState, initialize_logger

initialize_logger(console_level=2)

endpoint = Endpoint.parse(sys.argv[1] if len(sys.argv) > 1 else "192.168.4.1:4210")
timing = TimingState()

with CommandChannel(endpoint) as channel:
    estimator = LatencyEstimator(channel, timing, batch_size=10, tag_probes=True)
    result = estimator.measure()

print("RTTs:", ["timeout" if rtt is None else f"{rtt:.1f}" for rtt in result.samples])
print(f"Baseline {timing.snapshot.baseline_ms:.1f}ms, total wait {timing.snapshot.total_wait_ms:.1f}ms")
