import threading

from upscaler.core.utils import errors


class CancellationToken:
    """Thread-safe flag checked by the engine between scaling stages and between tiles.

    Cancellation never interrupts a stage that is already running.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            suffix = f" {where}" if where else ""
            raise errors.ProcessingCancelledError(f"Processing cancelled{suffix}.")
