"""Fixed-rate scheduler loop for the controllers"""
import threading
from logging import getLogger

_log = getLogger(__name__)


class SyncLoop:
    """Calls ``controller.tick()`` at ``tick_hz`` on a background thread.

    Use this when the host application has no frame callback of its own to
    drive the controller from. Only this thread may tick the controller.
    """

    def thread_func(self):
        period = 1.0 / self.tick_hz
        while not self._abort.is_set():
            try:
                self.controller.tick()
            except Exception as e:
                _log.exception("Exception during tick()", exc_info=e)
                raise
            self.ticks += 1
            self._abort.wait(period)

    def __init__(self, controller, tick_hz=90.0):
        """Initialise the loop

        :param controller: Controller to drive
        :type controller: CaptureMachinery
        :param tick_hz: Tick rate, defaults to 90
        :type tick_hz: float, optional
        """
        self.controller = controller
        self.tick_hz = tick_hz
        self.ticks = 0
        self._abort = threading.Event()
        self.thread = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_traceback):
        self.stop()

    def start(self):
        """Start ticking"""
        if self.thread is not None:
            raise RuntimeError("Loop is already running")
        self._abort.clear()
        self.thread = threading.Thread(target=self.thread_func, daemon=True)
        self.thread.start()

    def stop(self):
        """Stop ticking, waiting for the current tick to finish"""
        self._abort.set()
        if self.thread is not None:
            self.thread.join()
            self.thread = None
