import threading
import uuid
from collections import OrderedDict
from typing import Optional

from loguru import logger

from upscaler.core.result import UpscaleResult


class ResultStore:
    """In-memory store of finished results so chunks can be downloaded window by window.

    Holds at most ``max_results`` results; the oldest one is dropped (and its tile cache
    released) when a new one is added beyond that.
    """

    def __init__(self, max_results: int = 8):
        if max_results <= 0:
            raise ValueError("max_results must be a positive integer.")
        self._max_results = max_results
        self._results: OrderedDict = OrderedDict()
        self._lock = threading.Lock()

    def add(self, result: UpscaleResult) -> str:
        result_id = uuid.uuid4().hex
        with self._lock:
            self._results[result_id] = result
            while len(self._results) > self._max_results:
                evicted_id, evicted = self._results.popitem(last=False)
                _release(evicted)
                logger.info(f"Dropped result {evicted_id} from store")
        return result_id

    def get(self, result_id: str) -> Optional[UpscaleResult]:
        with self._lock:
            return self._results.get(result_id)

    def remove(self, result_id: str) -> bool:
        with self._lock:
            result = self._results.pop(result_id, None)
        if result is None:
            return False
        _release(result)
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)


def _release(result: UpscaleResult) -> None:
    if result.is_chunked:
        result.output.image.release()
