import threading
from concurrent import futures
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Dict, Hashable, List, Optional, TypeVar

T = TypeVar("T")

_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="bounded-call")


class KeyedLock:
    """One mutex per key, e.g. per expense id.

    An entry lives only while some thread holds or waits for its key.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[Hashable, List] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


def bounded_call(
    fn: Callable[..., T],
    timeout: float,
    *args,
    on_late_result: Optional[Callable[[T], None]] = None,
    **kwargs,
) -> T:
    """Run fn on the shared pool and wait at most `timeout` seconds.

    Raises concurrent.futures.TimeoutError when the call overruns; the
    call itself is left to finish in the background, and if it then
    succeeds its result is handed to `on_late_result`.
    """
    future = _pool.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except futures.TimeoutError:
        if on_late_result is not None:
            future.add_done_callback(_late_result_forwarder(on_late_result))
        raise


def _late_result_forwarder(callback: Callable[[T], None]):
    def forward(future: futures.Future) -> None:
        if not future.cancelled() and future.exception() is None:
            callback(future.result())

    return forward
