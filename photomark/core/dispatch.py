"""
Dispatch Orchestrator
=====================

Owns every in-flight generation exchange. One long-lived instance holds the
token bucket, the single-flight registry and the worker pool.

Per-operation state machine:

    IDLE -> VALIDATING -> QUEUED -> IN_FLIGHT -> (RETRYING <-> IN_FLIGHT)
         -> COMPLETED | CANCELLED | FATAL

- Validation failures resolve the handle immediately (FATAL, no network).
- Submissions with the same idempotency key while one is live attach to the
  existing operation; all attached handles receive the same outcome.
- Every attempt, retries included, first takes a token from the bucket.
  Waiting for a token keeps the operation queued, it never fails it.
- Retryable failures back off exponentially with jitter; a 429 Retry-After
  wins when it is longer.
- Each attempt runs on its own daemon thread under a hard wall-clock
  ceiling independent of the transport's own socket timeout.
- Cancelling the last attached handle cancels the operation: its registry
  entry is removed, a held token is refunded and a late transport result is
  discarded.
- A circuit breaker counts operations that exhaust their retry budget. While
  it is open, new operations resolve at once with a retryable ServerError.

Threading:
    Operations run on a ``DaemonThreadPoolExecutor``. ``self._lock`` guards
    the registry and every operation's state; it is taken before the token
    bucket's and the circuit breaker's own locks, never after. Futures are
    resolved outside the lock because their callbacks may call back into the
    orchestrator.

Author: Photomark Project
"""

import logging
import random
import threading
import time
from concurrent.futures import CancelledError, Future
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from photomark.core.annotation.markers import AnnotationSnapshot
from photomark.core.circuit_breaker import CircuitBreaker, CircuitState
from photomark.core.classifier import Blocked, Failed, GenerationOutcome, Success, classify
from photomark.core.config import PhotomarkConfig
from photomark.core.errors import ErrorKind, RequestValidationError
from photomark.core.image_processing import ImageSource
from photomark.core.rate_limiter import TokenBucket
from photomark.core.request_builder import GenerationOptions, GenerationRequest, RequestBuilder
from photomark.core.transport import Transport, TransportError
from photomark.utils.concurrency import DaemonThreadPoolExecutor, DeadlineExceeded, call_with_deadline

logger = logging.getLogger(__name__)


class OperationState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FATAL = "fatal"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationState.COMPLETED, OperationState.CANCELLED, OperationState.FATAL)


class _Operation:
    """Mutable per-key bookkeeping. Guarded by the orchestrator lock."""

    def __init__(self, request: GenerationRequest):
        self.request = request
        self.key = request.idempotency_key
        self.state = OperationState.QUEUED
        self.attempts = 0
        self.handles: List["OperationHandle"] = []
        self.cancel_event = threading.Event()
        self.holding_token = False
        self.trial = False
        self.outcome: Optional[GenerationOutcome] = None
        self.task: Optional[Future] = None
        self.created = time.monotonic()


class OperationHandle:
    """
    A submitter's view of an operation.

    Several handles may share one operation (single-flight); each has its
    own future, so cancelling one handle does not affect the others until
    the last one goes.
    """

    def __init__(self, orchestrator: Optional["DispatchOrchestrator"],
                 operation: Optional[_Operation], idempotency_key: Optional[str] = None):
        self._orchestrator = orchestrator
        self._operation = operation
        self._future: Future = Future()
        self.idempotency_key = operation.key if operation else idempotency_key

    @classmethod
    def resolved(cls, outcome: GenerationOutcome, idempotency_key: Optional[str] = None):
        """A handle that is already finished (validation failures)."""
        handle = cls(None, None, idempotency_key)
        handle._future.set_result(outcome)
        return handle

    @property
    def state(self) -> OperationState:
        if self._future.cancelled():
            return OperationState.CANCELLED
        if self._operation is None:
            return OperationState.FATAL
        return self._operation.state

    @property
    def attempts(self) -> int:
        return self._operation.attempts if self._operation else 0

    def result(self, timeout: Optional[float] = None) -> GenerationOutcome:
        """
        Wait for the outcome.

        Raises:
            concurrent.futures.CancelledError: The handle or operation was cancelled
            concurrent.futures.TimeoutError: ``timeout`` elapsed first
        """
        return self._future.result(timeout)

    def done(self) -> bool:
        return self._future.done()

    def cancelled(self) -> bool:
        return self._future.cancelled()

    def cancel(self) -> bool:
        """Detach this submitter. Returns False if the outcome was already delivered."""
        if self._orchestrator is None or self._future.done():
            return False
        return self._orchestrator._detach(self)

    def add_done_callback(self, fn: Callable[["OperationHandle"], Any]):
        self._future.add_done_callback(lambda _f: fn(self))

    def __repr__(self):
        key = (self.idempotency_key or "")[:12]
        return f"OperationHandle(key={key}, state={self.state.value}, attempts={self.attempts})"


class DispatchOrchestrator:
    """
    Validates, deduplicates, throttles, retries and cancels generation requests.

    Args:
        config: Aggregate configuration
        transport: Single-shot HTTP client
        clock: Monotonic time source for the token bucket
        rng: Random source for backoff jitter
        builder: Request builder, defaults to one built from ``config``

    Example:
        >>> with DispatchOrchestrator(config, GoogleAIClient(config.service)) as orch:
        ...     handle = orch.submit(image, store.snapshot(), GenerationOptions())
        ...     outcome = handle.result()
    """

    def __init__(self, config: Optional[PhotomarkConfig] = None, transport: Optional[Transport] = None,
                 *, clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None,
                 builder: Optional[RequestBuilder] = None):
        if transport is None:
            raise ValueError("A transport is required")
        self.config = config or PhotomarkConfig()
        self.transport = transport
        self._builder = builder or RequestBuilder(self.config.images, self.config.service.model)
        self._bucket = TokenBucket(self.config.rate_limit, clock=clock)
        self.breaker = CircuitBreaker(self.config.circuit_breaker, clock=clock)
        self._rng = rng or random.Random()
        self._executor = DaemonThreadPoolExecutor(
            max_workers=self.config.max_concurrent_operations,
            thread_name_prefix='PhotomarkDispatch',
        )
        self._lock = threading.Lock()
        self._registry: Dict[str, _Operation] = {}
        self._closed = False
        self._stats = {
            "submitted": 0,
            "rejected": 0,
            "deduplicated": 0,
            "short_circuited": 0,
            "network_attempts": 0,
            "retries": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
        }

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    def submit(self, image: ImageSource, snapshot: AnnotationSnapshot,
               options: Optional[GenerationOptions] = None) -> OperationHandle:
        """
        Validate and enqueue an edit. Never blocks on the network.

        Returns:
            OperationHandle. For invalid input the handle is already resolved
            with a non-retryable ``Failed`` outcome.
        """
        if self._closed:
            raise RuntimeError("DispatchOrchestrator has been shut down")

        logger.debug("Operation IDLE -> VALIDATING")
        try:
            request = self._builder.build(image, snapshot, options)
        except RequestValidationError as e:
            logger.error(f"Operation VALIDATING -> FATAL: {e.kind.value}: {e}")
            with self._lock:
                self._stats["submitted"] += 1
                self._stats["rejected"] += 1
            return OperationHandle.resolved(Failed(kind=e.kind, retryable=False, message=str(e)))

        with self._lock:
            self._stats["submitted"] += 1
            existing = self._registry.get(request.idempotency_key)
            if existing is not None and not existing.state.is_terminal:
                handle = OperationHandle(self, existing)
                existing.handles.append(handle)
                self._stats["deduplicated"] += 1
                logger.debug(
                    f"Operation {existing.key[:12]} joined by another submitter "
                    f"({len(existing.handles)} attached)"
                )
                return handle

            if not self.breaker.allow_request():
                self._stats["short_circuited"] += 1
                retry_in = self.breaker.retry_in()
                logger.warning(f"Circuit open, refusing operation {request.idempotency_key[:12]}")
                return OperationHandle.resolved(
                    Failed(
                        kind=ErrorKind.SERVER_ERROR,
                        retryable=True,
                        message="Circuit open after repeated service failures",
                        retry_after=retry_in or None,
                    ),
                    request.idempotency_key,
                )

            operation = _Operation(request)
            operation.trial = self.breaker.state is CircuitState.HALF_OPEN
            handle = OperationHandle(self, operation)
            operation.handles.append(handle)
            self._registry[operation.key] = operation
            logger.debug(f"Operation {operation.key[:12]} VALIDATING -> QUEUED")
            operation.task = self._executor.submit(self._run, operation)
        return handle

    def list_models(self) -> List[Dict[str, Any]]:
        """List models supporting generateContent, bounded by the metadata timeout."""
        timeout = self.config.service.metadata_timeout
        try:
            return call_with_deadline(
                lambda: self.transport.list_models(timeout), timeout, name='PhotomarkListModels'
            )
        except DeadlineExceeded as e:
            raise TransportError(str(e), e) from e

    def active_operations(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {
                    "idempotency_key": op.key,
                    "state": op.state.value,
                    "attempts": op.attempts,
                    "submitters": len(op.handles),
                    "age_seconds": round(time.monotonic() - op.created, 3),
                }
                for op in self._registry.values()
            ]

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)

    def cancel_all(self) -> int:
        """Cancel every live operation. Returns how many were cancelled."""
        with self._lock:
            operations = list(self._registry.values())
            handles: List[OperationHandle] = []
            for op in operations:
                handles.extend(op.handles)
                self._cancel_locked(op)
        for handle in handles:
            handle._future.cancel()
        if operations:
            logger.info(f"Cancelled {len(operations)} operation(s)")
        return len(operations)

    def shutdown(self, wait: bool = True):
        self._closed = True
        self.cancel_all()
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown(wait=True)

    # ========================================================================
    # CANCELLATION
    # ========================================================================

    def _detach(self, handle: OperationHandle) -> bool:
        op = handle._operation
        with self._lock:
            if op.state.is_terminal or handle not in op.handles:
                return False
            op.handles.remove(handle)
            if not op.handles:
                self._cancel_locked(op)
            else:
                logger.debug(
                    f"Submitter detached from {op.key[:12]} ({len(op.handles)} remaining)"
                )
        return handle._future.cancel()

    def _cancel_locked(self, op: _Operation):
        """Caller holds self._lock."""
        if op.state.is_terminal:
            return
        self._transition(op, OperationState.CANCELLED)
        op.handles = []
        op.cancel_event.set()
        if self._registry.get(op.key) is op:
            del self._registry[op.key]
        if op.trial:
            self.breaker.release_trial()
        if op.holding_token:
            op.holding_token = False
            self._bucket.refund()
        else:
            self._bucket.notify()
        if op.task is not None:
            op.task.cancel()
        self._stats["cancelled"] += 1

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def _run(self, op: _Operation):
        try:
            self._run_attempts(op)
        except Exception as e:
            logger.exception(f"Operation {op.key[:12]} crashed: {e}")
            with self._lock:
                if op.state.is_terminal:
                    return
                self._transition(op, OperationState.FATAL)
                handles = self._retire_locked(op)
                self._stats["failed"] += 1
                if op.trial:
                    self.breaker.release_trial()
            for handle in handles:
                handle._future.set_exception(e)

    def _run_attempts(self, op: _Operation):
        retry = self.config.retry
        timeout = self.config.service.generation_timeout
        retry_index = 0

        while True:
            if not self._bucket.acquire(op.cancel_event):
                return

            with self._lock:
                if op.state.is_terminal:
                    self._bucket.refund()
                    return
                op.holding_token = True
                op.attempts += 1
                self._stats["network_attempts"] += 1
                self._transition(op, OperationState.IN_FLIGHT)

            outcome = self._attempt(op, timeout)

            with self._lock:
                if op.state.is_terminal:
                    logger.debug(f"Discarding late result for cancelled operation {op.key[:12]}")
                    return
                op.holding_token = False

                if isinstance(outcome, Failed) and outcome.retryable and op.attempts < retry.max_attempts:
                    delay = self._backoff_delay(retry_index, outcome.retry_after)
                    self._stats["retries"] += 1
                    self._transition(op, OperationState.RETRYING)
                else:
                    self._finish_locked(op, outcome)
                    handles = self._retire_locked(op)
                    break

            logger.warning(
                f"Operation {op.key[:12]} attempt {op.attempts}/{retry.max_attempts} failed "
                f"({outcome.kind.value}: {outcome.message}), retrying in {delay:.2f}s"
            )
            if op.cancel_event.wait(delay):
                return
            retry_index += 1

        for handle in handles:
            handle._future.set_result(outcome)

    def _attempt(self, op: _Operation, timeout: float) -> Optional[GenerationOutcome]:
        try:
            response = call_with_deadline(
                lambda: self.transport.generate(op.request, timeout),
                timeout,
                op.cancel_event,
                name=f'PhotomarkAttempt-{op.key[:8]}',
            )
        except CancelledError:
            return None
        except DeadlineExceeded as e:
            return Failed(kind=ErrorKind.TRANSPORT_ERROR, retryable=True, message=str(e))
        except TransportError as e:
            return classify(None, None, transport_error=e)

        return classify(response.status_code, response.body, headers=response.headers)

    def _backoff_delay(self, retry_index: int, retry_after: Optional[float]) -> float:
        retry = self.config.retry
        low, high = retry.jitter
        delay = min(retry.max_delay, retry.base_delay * (2 ** retry_index)) * self._rng.uniform(low, high)
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        return delay

    def _finish_locked(self, op: _Operation, outcome: GenerationOutcome):
        op.outcome = outcome
        if isinstance(outcome, Failed) and outcome.retryable:
            self.breaker.record_failure()
        else:
            self.breaker.record_success()
        if isinstance(outcome, (Success, Blocked)):
            self._transition(op, OperationState.COMPLETED)
            self._stats["completed"] += 1
            if isinstance(outcome, Blocked):
                logger.warning(f"Operation {op.key[:12]} blocked by safety policy: {outcome.reason}")
            else:
                logger.info(
                    f"Operation {op.key[:12]} completed after {op.attempts} attempt(s), "
                    f"{len(outcome.image)} bytes {outcome.mime_type}"
                )
        else:
            self._transition(op, OperationState.FATAL)
            self._stats["failed"] += 1
            logger.error(
                f"Operation {op.key[:12]} failed after {op.attempts} attempt(s): "
                f"{outcome.kind.value}: {outcome.message}"
            )

    def _retire_locked(self, op: _Operation) -> List[OperationHandle]:
        handles, op.handles = op.handles, []
        if self._registry.get(op.key) is op:
            del self._registry[op.key]
        return handles

    def _transition(self, op: _Operation, new_state: OperationState):
        logger.debug(f"Operation {op.key[:12]} {op.state.name} -> {new_state.name}")
        op.state = new_state
