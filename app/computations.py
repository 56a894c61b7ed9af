"""Computation dispatch and callback delivery.

Computations run in one of two modes (operational.computation_mode):

- queued: a single background worker drains a FIFO asyncio.Queue, so
  computations for the same session run in submission order
- inline: executed during the request that created them

Either way the boundary reads the latest sealed state when the computation
runs, not when it was queued, and its output goes through deliver(), which
verifies the signature before anything is stored.
"""

from __future__ import annotations

import asyncio
import logging

from pcd.errors import PCDError, VerificationError
from pcd.verify import SignedOutput, verify_output

from .db_models import Computation
from .ledger import mark_matched, require_runnable
from .mxe import ComputationRequest, get_boundary
from .settings import get_setting_choice
from .storage import computation_store, sealed_state_store

logger = logging.getLogger(__name__)

COMPUTATION_MODES = {"queued", "inline"}


def computation_mode() -> str:
    return get_setting_choice("operational.computation_mode", COMPUTATION_MODES)


def deliver(output: SignedOutput) -> Computation:
    """Callback for a finished computation.

    A bad signature, or an output that does not belong to the computation
    it names, fails the computation and leaves the ledger untouched. So does a
    session whose status no longer allows the computation, such as one that
    expired while it was queued.

    Raises:
        VerificationError: The output names an unknown computation
    """
    computation = computation_store.get(output.computation_id)
    if computation is None:
        raise VerificationError(f"Output for unknown computation {output.computation_id}")
    if computation.status != "queued":
        logger.warning(
            f"Computation {computation.computation_id} already {computation.status}; "
            "ignoring duplicate delivery"
        )
        return computation

    try:
        verify_output(output, get_boundary().keys.verify_key)
        if output.session_id != computation.session_id or output.kind != computation.kind:
            raise VerificationError(
                f"Output does not match computation {computation.computation_id}"
            )
    except VerificationError as e:
        logger.error(f"Computation {computation.computation_id} rejected: {e.detail}")
        computation_store.fail(computation.computation_id, f"verification failed: {e.detail}")
        return computation_store.get(computation.computation_id)

    try:
        require_runnable(computation.session_id, computation.kind)
    except PCDError as e:
        logger.warning(f"Computation {computation.computation_id} not applied: {e.detail}")
        computation_store.fail(computation.computation_id, e.detail)
        return computation_store.get(computation.computation_id)

    if output.sealed_state is not None:
        sealed_state_store.put(computation.session_id, output.sealed_state)
    computation_store.finalize(computation.computation_id, output.to_dict())
    if computation.kind == "submit_and_match":
        mark_matched(computation.session_id)

    logger.info(
        f"Computation {computation.computation_id} ({computation.kind}) finalized "
        f"for session {computation.session_id[:16]}"
    )
    return computation_store.get(computation.computation_id)


def run_computation(computation_id: str) -> Computation | None:
    """Execute a queued computation in the boundary and deliver its output."""
    computation = computation_store.get(computation_id)
    if computation is None:
        logger.warning(f"Computation {computation_id} vanished before it ran")
        return None
    if computation.status != "queued":
        return computation

    sealed = sealed_state_store.get(computation.session_id)
    request = ComputationRequest(
        computation_id=computation.computation_id,
        session_id=computation.session_id,
        kind=computation.kind,
        payload=computation.request or {},
    )
    try:
        require_runnable(computation.session_id, computation.kind)
        output = get_boundary().execute(request, sealed.sealed if sealed else None)
    except PCDError as e:
        logger.warning(f"Computation {computation_id} ({computation.kind}) failed: {e.detail}")
        computation_store.fail(computation_id, e.detail)
        return computation_store.get(computation_id)
    except Exception as e:
        logger.exception(f"Computation {computation_id} ({computation.kind}) crashed")
        computation_store.fail(computation_id, f"{type(e).__name__}: {e}")
        return computation_store.get(computation_id)

    return deliver(output)


class ComputationQueue:
    """FIFO of computation ids drained by one worker task."""

    def __init__(self):
        self._queue: asyncio.Queue | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._worker: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        """Start the worker, re-queueing computations left pending by a previous run."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        pending = computation_store.get_pending()
        for computation in pending:
            self._queue.put_nowait(computation.computation_id)
        if pending:
            logger.info(f"Re-queued {len(pending)} pending computation(s)")
        self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None
        self._loop = None

    def enqueue(self, computation_id: str) -> None:
        if not self.running:
            # Picked up from the DB when the worker starts
            logger.warning(f"Computation queue not running; {computation_id} stays pending")
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is self._loop:
            self._queue.put_nowait(computation_id)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, computation_id)

    async def join(self) -> None:
        """Wait until every queued computation has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _run(self) -> None:
        while True:
            computation_id = await self._queue.get()
            try:
                run_computation(computation_id)
            except Exception as e:
                logger.error(f"Computation worker error on {computation_id}: {e}")
            finally:
                self._queue.task_done()


computation_queue = ComputationQueue()


def dispatch(computation: Computation) -> Computation:
    """Hand a freshly created computation to the boundary."""
    if computation_mode() == "inline":
        return run_computation(computation.computation_id) or computation
    computation_queue.enqueue(computation.computation_id)
    return computation
