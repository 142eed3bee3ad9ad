import threading
from concurrent.futures import Future, ThreadPoolExecutor

import structlog

from gatekeeper.errors import VerifierSaturated

logger = structlog.get_logger()


class VerifierPool:
    """
    Bounded worker pool for VDF verification.

    At most ``max_pending`` jobs may be queued or running. Further submissions
    fail immediately with :class:`VerifierSaturated` instead of queueing.
    """

    def __init__(self, max_workers: int = 4, max_pending: int = 64):
        if max_workers < 1 or max_pending < max_workers:
            raise ValueError("Require 1 <= max_workers <= max_pending")
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="vdf-verify"
        )
        self._slots = threading.BoundedSemaphore(max_pending)
        self.max_pending = max_pending

    def submit(self, fn, *args) -> Future:
        if not self._slots.acquire(blocking=False):
            logger.warning("verifier_saturated", max_pending=self.max_pending)
            raise VerifierSaturated("Verifier pool is saturated")
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError as e:
            self._slots.release()
            raise VerifierSaturated("Verifier pool is shut down") from e
        future.add_done_callback(lambda _: self._slots.release())
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)
