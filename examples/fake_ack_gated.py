#!/usr/bin/python3
# Runs the ack-gated controller against a fake light on loopback and saves
# the first difference image.
from strobecam import SyncLoop, build_controller, initialize_logger
from strobecam.differencing import DifferenceSink
from strobecam.fake import FakeFrameSource, FakeLightRemote
from strobecam.testing import mature_after_pairs_or_timeout

initialize_logger(console_level=1)

with FakeLightRemote(latency=0.01) as remote:
    host, port = remote.address
    source = FakeFrameSource((320, 240), light_state=lambda: remote.light_on)
    controller = build_controller({"host": host, "port": port}, source, mode="ack")

    sink = DifferenceSink()
    controller.add_pair_callback(sink)
    controller.start()

    with SyncLoop(controller, tick_hz=90):
        mature_after_pairs_or_timeout(controller, 10).result()

    print(controller.link_stats())
    print(f"{controller.cycles} cycles, {controller.ack_timeouts} ACK timeouts")
    controller.close()

sink.make_image().save("difference.png")
