"""
Detached signature checker.

The checker runs on a dedicated thread hosting its own asyncio event loop.
Its main routine only pulls requests from the inbound queue and spawns one
task per request, so a slow on-chain query never holds up the requests
behind it. Each task verifies its request and resolves the request's reply
slot; ECDSA recovery runs on a thread pool so recoveries proceed in parallel.

Usage:
    queue = VerifyRequestQueue(maxsize=settings.request_queue_size)
    checker = start_sign_checker_detached(settings, queue, panic_notify=monitor.report)

    try:
        verified = await request_verification(queue, TxVariant.single(tx))
    except TxRejectedError as e:
        ...  # refused, see e.kind
"""
from __future__ import annotations

import asyncio
import logging
import queue as queue_module
import threading
import time
from collections import deque
from concurrent.futures import (
    CancelledError,
    Executor,
    Future,
    InvalidStateError,
    ThreadPoolExecutor,
    TimeoutError as FuturesTimeoutError,
)
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from .config import OnchainFailurePolicy, SignatureCheckerSettings
from .eth_checker import EthereumCheckerPort, build_eth_checker
from .exceptions import (
    OnchainQueryError,
    QueueClosedError,
    RejectionKind,
    ResponseChannelClosed,
    SignatureCheckerStartupError,
    TxRejectedError,
)
from .logging_config import bind_request_context, generate_request_id
from .verification import TxVariant, VerifiedTx

logger = logging.getLogger(__name__)

PanicNotify = Callable[[BaseException], None]

_QUEUE_POLL_INTERVAL_SECONDS = 0.2


@dataclass
class VerifyTxSignatureRequest:
    """Request for the signature check.

    `response` receives exactly one outcome: the VerifiedTx, a
    TxRejectedError, or ResponseChannelClosed if the check was aborted.
    """
    tx: TxVariant
    response: Future = field(default_factory=Future)
    request_id: str = field(default_factory=generate_request_id)

    async def wait(self) -> VerifiedTx:
        """Await the outcome from any event loop.

        Cancelling the awaiting task cancels the reply slot; the checker then
        discards its result.
        """
        return await asyncio.wrap_future(self.response)


class VerifyRequestQueue:
    """Multi-producer, single-consumer FIFO of verify requests.

    `maxsize` of 0 means unbounded. Producers block (or await) when a bounded
    queue is full. Enqueueing and closing happen under one lock, so a request
    is either accepted before `close()` and still reaches the consumer, or
    refused with QueueClosedError. `close()` never blocks.
    """

    def __init__(self, maxsize: int = 0):
        self._maxsize = maxsize
        self._items: Deque[VerifyTxSignatureRequest] = deque()
        self._closed = False
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)

    @property
    def maxsize(self) -> int:
        return self._maxsize

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        with self._lock:
            return len(self._items)

    def _has_room(self) -> bool:
        return self._maxsize <= 0 or len(self._items) < self._maxsize

    def _append(self, request: VerifyTxSignatureRequest) -> None:
        self._items.append(request)
        self._not_empty.notify()

    def put(self, request: VerifyTxSignatureRequest, timeout: Optional[float] = None) -> None:
        """
        Enqueue a request, blocking while a bounded queue is full.

        Raises:
            QueueClosedError: If the queue is closed before the request fits
            queue.Full: If `timeout` elapsed with the queue still full
        """
        with self._not_full:
            if not self._not_full.wait_for(lambda: self._closed or self._has_room(), timeout):
                raise queue_module.Full
            if self._closed:
                raise QueueClosedError()
            self._append(request)

    def put_nowait(self, request: VerifyTxSignatureRequest) -> None:
        with self._lock:
            if self._closed:
                raise QueueClosedError()
            if not self._has_room():
                raise queue_module.Full
            self._append(request)

    async def send(self, request: VerifyTxSignatureRequest) -> None:
        """Enqueue a request without blocking the calling event loop."""
        try:
            self.put_nowait(request)
        except queue_module.Full:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.put, request)

    def close(self) -> None:
        """Stop accepting requests. The consumer exits once the queue is drained."""
        with self._lock:
            self._closed = True
            self._not_empty.notify_all()
            self._not_full.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[VerifyTxSignatureRequest]:
        """
        Take the next request.

        Returns:
            The next request, or None once the queue is closed and drained

        Raises:
            queue.Empty: If `timeout` elapsed with nothing to read
        """
        with self._not_empty:
            if not self._not_empty.wait_for(lambda: self._closed or self._items, timeout):
                raise queue_module.Empty
            if not self._items:
                return None
            request = self._items.popleft()
            self._not_full.notify()
            return request

    def drain(self) -> List[VerifyTxSignatureRequest]:
        """Remove and return every request still waiting in the queue."""
        with self._lock:
            drained = list(self._items)
            self._items.clear()
            self._not_full.notify_all()
            return drained


class ThreadPanicNotify:
    """Reports an unrecoverable fault of the current thread to the process monitor."""

    def __init__(self, notify: Optional[PanicNotify]):
        self._notify = notify

    def __enter__(self) -> "ThreadPanicNotify":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None:
            logger.critical(
                f"{threading.current_thread().name} terminated by unrecoverable fault: {exc!r}",
                exc_info=(exc_type, exc, tb),
            )
            if self._notify is not None:
                self._notify(exc)
        return False


@dataclass
class CheckerStats:
    """Counters describing the checker's work so far."""
    received: int = 0
    verified: int = 0
    faulted: int = 0
    dropped_replies: int = 0
    in_flight: int = 0
    rejected: Dict[RejectionKind, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_received(self) -> None:
        with self._lock:
            self.received += 1
            self.in_flight += 1

    def record_verified(self) -> None:
        with self._lock:
            self.verified += 1

    def record_rejected(self, kind: RejectionKind) -> None:
        with self._lock:
            self.rejected[kind] = self.rejected.get(kind, 0) + 1

    def record_fault(self) -> None:
        with self._lock:
            self.faulted += 1

    def record_dropped_reply(self) -> None:
        with self._lock:
            self.dropped_replies += 1

    def record_finished(self) -> None:
        with self._lock:
            self.in_flight -= 1

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "received": self.received,
                "verified": self.verified,
                "rejected": {kind.value: count for kind, count in self.rejected.items()},
                "faulted": self.faulted,
                "dropped_replies": self.dropped_replies,
                "in_flight": self.in_flight,
            }


class SignatureChecker:
    """Concurrent signature checker running on its own thread and event loop."""

    THREAD_NAME = "Signature checker thread"

    def __init__(
        self,
        settings: SignatureCheckerSettings,
        eth_checker: Optional[EthereumCheckerPort] = None,
        panic_notify: Optional[PanicNotify] = None,
    ):
        self._settings = settings
        self._eth_checker = eth_checker
        self._panic_notify = panic_notify
        self._thread: Optional[threading.Thread] = None
        self._in_flight: Dict[asyncio.Task, VerifyTxSignatureRequest] = {}
        # Queue read running on the reader thread, if any.
        self._pending_read: Optional[Future] = None
        self.stats = CheckerStats()

    @property
    def thread(self) -> Optional[threading.Thread]:
        return self._thread

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, input_queue: VerifyRequestQueue) -> threading.Thread:
        """
        Start the checker thread and wait until it is ready to serve requests.

        Raises:
            SignatureCheckerStartupError: If the on-chain checker cannot be
                built or reached, or the thread cannot be started
        """
        if self._thread is not None:
            raise RuntimeError("signature checker already started")

        try:
            eth_checker = self._eth_checker or build_eth_checker(self._settings)
        except Exception as e:
            raise SignatureCheckerStartupError(f"Unable to create Ethereum checker: {e}") from e
        self._eth_checker = eth_checker

        started: Future = Future()
        thread = threading.Thread(
            target=self._run,
            args=(input_queue, eth_checker, started),
            name=self.THREAD_NAME,
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError as e:
            raise SignatureCheckerStartupError(f"Failed to start signature checker thread: {e}") from e
        self._thread = thread

        try:
            started.result()
        except Exception as e:
            thread.join()
            raise SignatureCheckerStartupError(f"Signature checker failed to start: {e}") from e
        return thread

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the checker thread to exit. Returns True if it has."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(
        self,
        input_queue: VerifyRequestQueue,
        eth_checker: EthereumCheckerPort,
        started: Future,
    ) -> None:
        with ThreadPanicNotify(self._panic_notify):
            try:
                loop = asyncio.new_event_loop()
            except Exception as e:
                started.set_exception(e)
                return
            asyncio.set_event_loop(loop)
            recover_pool = ThreadPoolExecutor(
                max_workers=self._settings.max_verify_workers,
                thread_name_prefix="sig-recover",
            )
            reader = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sig-reader")
            try:
                loop.run_until_complete(
                    self._main(input_queue, eth_checker, recover_pool, reader, started)
                )
            except BaseException as e:
                if not started.done():
                    started.set_exception(e)
                try:
                    self._abort_outstanding(input_queue)
                except Exception as abort_error:
                    logger.error(
                        f"Failed to close outstanding replies: {abort_error!r}",
                        exc_info=abort_error,
                    )
                raise
            finally:
                reader.shutdown(wait=False)
                recover_pool.shutdown(wait=False)
                loop.run_until_complete(loop.shutdown_asyncgens())
                loop.close()

    async def _main(
        self,
        input_queue: VerifyRequestQueue,
        eth_checker: EthereumCheckerPort,
        recover_pool: Executor,
        reader: Executor,
        started: Future,
    ) -> None:
        if self._settings.verify_endpoint_on_startup:
            try:
                await eth_checker.ensure_connected()
            except OnchainQueryError as e:
                await eth_checker.close()
                started.set_exception(e)
                return
        started.set_result(None)

        policy = self._settings.onchain_failure_policy
        logger.info(
            f"Signature checker started: verify_workers={self._settings.max_verify_workers} "
            f"queue_size={input_queue.maxsize or 'unbounded'} "
            f"onchain_failure_policy={policy.value}"
        )
        if policy == OnchainFailurePolicy.FATAL:
            logger.warning(
                "On-chain query failures abort the affected request without a verdict "
                "(onchain_failure_policy=fatal)"
            )

        await self._checker_routine(input_queue, eth_checker, recover_pool, reader)

        # The queue is closed; let in-flight checks finish on their own.
        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} in-flight signature checks")
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        await eth_checker.close()
        logger.info(f"Signature checker stopped: {self.stats.to_dict()}")

    async def _checker_routine(
        self,
        input_queue: VerifyRequestQueue,
        eth_checker: EthereumCheckerPort,
        recover_pool: Executor,
        reader: Executor,
    ) -> None:
        """Receive requests and spawn a verification task for each of them."""
        loop = asyncio.get_running_loop()
        while True:
            read = reader.submit(input_queue.get, _QUEUE_POLL_INTERVAL_SECONDS)
            self._pending_read = read
            try:
                request = await asyncio.wrap_future(read)
            except queue_module.Empty:
                self._pending_read = None
                continue
            self._pending_read = None
            if request is None:
                return

            self.stats.record_received()
            task = loop.create_task(self._verify_and_reply(request, eth_checker, recover_pool))
            self._in_flight[task] = request
            task.add_done_callback(self._on_task_done)

    async def _verify_and_reply(
        self,
        request: VerifyTxSignatureRequest,
        eth_checker: EthereumCheckerPort,
        recover_pool: Executor,
    ) -> None:
        bind_request_context(request.request_id, request.tx.kind.value)
        started_at = time.monotonic()
        try:
            verified = await VerifiedTx.verify(request.tx, eth_checker, executor=recover_pool)
        except TxRejectedError as e:
            self.stats.record_rejected(e.kind)
            logger.info(f"Rejected {request.tx.kind.value}: {e.kind.value}")
            self._deliver(request, exception=e)
            return
        except OnchainQueryError as e:
            if self._settings.onchain_failure_policy != OnchainFailurePolicy.REJECT:
                raise
            self.stats.record_rejected(RejectionKind.ONCHAIN_CHECK_UNAVAILABLE)
            logger.warning(f"On-chain check unavailable, rejecting request: {e}")
            self._deliver(
                request,
                exception=TxRejectedError(
                    RejectionKind.ONCHAIN_CHECK_UNAVAILABLE, details={"method": e.method}
                ),
            )
            return

        self.stats.record_verified()
        logger.debug(
            f"Verified {request.tx.kind.value} of {len(request.tx.txs)} tx(s) "
            f"in {(time.monotonic() - started_at) * 1000:.1f}ms"
        )
        self._deliver(request, result=verified)

    def _on_task_done(self, task: asyncio.Task) -> None:
        """Forget the finished task; a task that failed closes its reply slot."""
        request = self._in_flight.pop(task)
        self.stats.record_finished()
        if task.cancelled():
            self._deliver(request, exception=ResponseChannelClosed("Signature check was cancelled"))
            return
        exc = task.exception()
        if exc is not None:
            self.stats.record_fault()
            logger.error(
                f"Signature check {request.request_id} aborted, closing its reply",
                exc_info=exc,
            )
            self._deliver(
                request,
                exception=ResponseChannelClosed(f"Signature check aborted: {exc}"),
            )

    def _deliver(
        self,
        request: VerifyTxSignatureRequest,
        result: Optional[VerifiedTx] = None,
        exception: Optional[BaseException] = None,
    ) -> None:
        """Resolve the reply slot. A receiver that has gone away is not an error."""
        try:
            if exception is not None:
                request.response.set_exception(exception)
            else:
                request.response.set_result(result)
        except InvalidStateError:
            self.stats.record_dropped_reply()
            logger.debug(f"Receiver of {request.request_id} is gone, dropping reply")

    def _abort_outstanding(self, input_queue: VerifyRequestQueue) -> None:
        """Close every reply the dying checker can no longer answer."""
        input_queue.close()
        closed = ResponseChannelClosed("Signature checker terminated")

        # A request the reader took off the queue but the loop never received.
        read, self._pending_read = self._pending_read, None
        if read is not None:
            try:
                request = read.result(timeout=_QUEUE_POLL_INTERVAL_SECONDS * 5)
            except (queue_module.Empty, CancelledError, FuturesTimeoutError):
                request = None
            if request is not None:
                self._deliver(request, exception=closed)

        for task, request in list(self._in_flight.items()):
            task.remove_done_callback(self._on_task_done)
            task.cancel()
            self._deliver(request, exception=closed)
        self._in_flight.clear()
        for request in input_queue.drain():
            self._deliver(request, exception=closed)


def start_sign_checker_detached(
    settings: SignatureCheckerSettings,
    input_queue: VerifyRequestQueue,
    panic_notify: Optional[PanicNotify] = None,
    eth_checker: Optional[EthereumCheckerPort] = None,
) -> SignatureChecker:
    """Build the on-chain checker from settings and start the checker thread."""
    checker = SignatureChecker(settings, eth_checker=eth_checker, panic_notify=panic_notify)
    checker.start(input_queue)
    return checker


async def request_verification(
    input_queue: VerifyRequestQueue,
    tx_variant: TxVariant,
) -> VerifiedTx:
    """
    Submit a payload to the checker and wait for its verdict.

    Raises:
        TxRejectedError: The payload was refused
        ResponseChannelClosed: The check was aborted without a verdict
        QueueClosedError: The checker no longer accepts requests
    """
    request = VerifyTxSignatureRequest(tx=tx_variant)
    await input_queue.send(request)
    return await request.wait()
