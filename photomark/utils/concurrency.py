import logging
import queue
import threading
import time
from concurrent.futures import CancelledError, Executor, Future
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Longest single wait before re-checking a cancel event
POLL_INTERVAL = 0.05


class DeadlineExceeded(Exception):
    """Raised by ``call_with_deadline`` when the callable overruns its ceiling."""
    pass


class DaemonThreadPoolExecutor(Executor):
    """
    A ThreadPoolExecutor-like class that guarantees worker threads are daemons.
    This ensures that a request stuck on the network does not prevent the
    Python process from exiting.

    It implements the subset of the concurrent.futures.Executor interface
    Photomark needs: submit, shutdown and context management.
    """
    def __init__(self, max_workers=None, thread_name_prefix='PhotomarkWorker'):
        if max_workers is None:
            max_workers = 5

        self._max_workers = max_workers
        self._thread_name_prefix = thread_name_prefix
        self._work_queue = queue.Queue()
        self._threads = []
        self._idle = 0
        self._shutdown = False
        self._lock = threading.Lock()

    def submit(self, fn, *args, **kwargs):
        with self._lock:
            if self._shutdown:
                raise RuntimeError('cannot schedule new futures after shutdown')

            f = Future()
            self._work_queue.put((fn, args, kwargs, f))
            self._adjust_thread_count()
        return f

    def _adjust_thread_count(self):
        # Caller holds self._lock. Spawn only when nobody is idle to take the item.
        if self._idle == 0 and len(self._threads) < self._max_workers:
            t = threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name=f"{self._thread_name_prefix}-{len(self._threads)}"
            )
            self._threads.append(t)
            t.start()
        elif self._idle > 0:
            self._idle -= 1

    def _worker_loop(self):
        while True:
            item = self._work_queue.get()
            if item is None:
                # Sentinel
                break

            fn, args, kwargs, future = item
            try:
                if future.set_running_or_notify_cancel():
                    try:
                        result = fn(*args, **kwargs)
                    except BaseException as e:
                        future.set_exception(e)
                    else:
                        future.set_result(result)
            finally:
                self._work_queue.task_done()
                with self._lock:
                    self._idle += 1

    def shutdown(self, wait=True, cancel_futures=False):
        with self._lock:
            self._shutdown = True
            threads = list(self._threads)

        if cancel_futures:
            while True:
                try:
                    item = self._work_queue.get_nowait()
                except queue.Empty:
                    break
                if item is not None:
                    item[3].cancel()
                self._work_queue.task_done()

        # Send sentinel to all threads
        for _ in threads:
            self._work_queue.put(None)

        if wait:
            for t in threads:
                if t is not threading.current_thread():
                    t.join()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown(wait=True)


def call_with_deadline(fn: Callable, timeout: float,
                       cancel_event: Optional[threading.Event] = None,
                       name: str = 'PhotomarkAttempt'):
    """
    Run ``fn()`` on its own daemon thread and wait at most ``timeout`` seconds.

    The thread cannot be interrupted; on timeout or cancellation it is
    abandoned and whatever it eventually returns is discarded.

    Raises:
        DeadlineExceeded: ``fn`` did not finish within ``timeout``
        CancelledError: ``cancel_event`` was set while waiting
        Exception: Whatever ``fn`` raised
    """
    done = threading.Event()
    outcome = {}

    def runner():
        try:
            outcome['result'] = fn()
        except BaseException as e:
            outcome['error'] = e
        finally:
            done.set()

    threading.Thread(target=runner, daemon=True, name=name).start()

    deadline = time.monotonic() + timeout
    while not done.is_set():
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledError()
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.debug(f"{name} exceeded its {timeout:.1f}s deadline")
            raise DeadlineExceeded(f"Attempt exceeded {timeout:.1f}s deadline")
        done.wait(min(remaining, POLL_INTERVAL))

    if 'error' in outcome:
        raise outcome['error']
    return outcome.get('result')
