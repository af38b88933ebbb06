from __future__ import annotations

"""Transaction execution lifecycle for one write dialog.

Steps:
  form -> pending -> (confirming) -> success | error | cancelled

  - A user rejection in the wallet ends in `cancelled` with no message.
  - Any other failure ends in `error` with the failure's message; it is never
    retried automatically, only through `retry()`.
  - Success calls `on_success(result)` and schedules `on_close` after the
    auto-close delay.
  - `reset()` returns to `form` and cancels the scheduled close. An outcome
    that lands after a reset is dropped.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

from ledgersync.ledger.adapters import MutationHandle
from ledgersync.ledger.types import OperationResult
from ledgersync.runtime.errors import error_message, is_user_rejection_error
from ledgersync.runtime.metrics import inc_counter
from ledgersync.runtime.sync_config import SyncConfig, sync_config_from_env
from ledgersync.runtime.sync_logging import log_event

log = logging.getLogger("ledgersync.tx_execution")


class TxStep:
    FORM = "form"
    PENDING = "pending"
    CONFIRMING = "confirming"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


TX_STEPS = (
    TxStep.FORM,
    TxStep.PENDING,
    TxStep.CONFIRMING,
    TxStep.SUCCESS,
    TxStep.ERROR,
    TxStep.CANCELLED,
)

# Write-layer statuses meaning "signed and submitted, not yet confirmed".
CONFIRMING_STATUSES = frozenset({"pendingConfirmation", "pendingRelayer"})

SuccessCallback = Callable[[OperationResult], None]
CloseCallback = Callable[[], None]
Thunk = Callable[[], Awaitable[OperationResult]]


class _ExecutionBase:
    def __init__(
        self,
        *,
        on_success: Optional[SuccessCallback] = None,
        on_close: Optional[CloseCallback] = None,
        auto_close_delay_ms: Optional[int] = None,
        cfg: Optional[SyncConfig] = None,
    ) -> None:
        if auto_close_delay_ms is None:
            auto_close_delay_ms = (cfg or sync_config_from_env()).auto_close_delay_ms
        if int(auto_close_delay_ms) < 0:
            raise ValueError(f"auto_close_delay_ms must be >= 0; got: {auto_close_delay_ms}")
        self.on_success = on_success
        self.on_close = on_close
        self.auto_close_delay_ms = int(auto_close_delay_ms)
        self.step: str = TxStep.FORM
        self.error_message: Optional[str] = None
        self._close_handle: Optional[asyncio.TimerHandle] = None
        # Bumped on reset so an in-flight write cannot report into a fresh form.
        self._generation = 0

    @property
    def is_transacting(self) -> bool:
        return self.step in (TxStep.PENDING, TxStep.CONFIRMING)

    @property
    def close_scheduled(self) -> bool:
        return self._close_handle is not None

    def on_status_update(self, status: str) -> None:
        """Follow the write layer's status while a write is in flight."""
        if self.step == TxStep.PENDING and status in CONFIRMING_STATUSES:
            self.step = TxStep.CONFIRMING
            log_event(log, "tx_execution_confirming", status=status)

    def _cancel_close(self) -> None:
        if self._close_handle is not None:
            self._close_handle.cancel()
            self._close_handle = None

    def _auto_close(self) -> None:
        self._close_handle = None
        if self.on_close is not None:
            self.on_close()

    async def _run(self, call: Thunk) -> None:
        self._cancel_close()
        generation = self._generation
        self.step = TxStep.PENDING
        self.error_message = None
        log_event(log, "tx_execution_started")

        try:
            result = await call()
        except Exception as e:
            if generation != self._generation:
                log_event(log, "tx_execution_outcome_dropped", level=logging.DEBUG, outcome="failure")
                return
            if is_user_rejection_error(e):
                self.step = TxStep.CANCELLED
                inc_counter("tx_cancelled")
                log_event(log, "tx_execution_cancelled")
            else:
                self.step = TxStep.ERROR
                self.error_message = error_message(e)
                inc_counter("tx_error")
                log_event(log, "tx_execution_failed", level=logging.WARNING, error=self.error_message)
            return

        if generation != self._generation:
            log_event(log, "tx_execution_outcome_dropped", level=logging.DEBUG, outcome="success")
            return

        self.step = TxStep.SUCCESS
        inc_counter("tx_success")
        log_event(log, "tx_execution_succeeded", operation_id=getattr(result, "id", None))
        if self.on_success is not None:
            try:
                self.on_success(result)
            except Exception:
                # The write already landed: still schedule the close.
                log.exception("on_success callback failed")
            if generation != self._generation:
                # on_success reset the dialog itself
                return

        loop = asyncio.get_running_loop()
        self._close_handle = loop.call_later(self.auto_close_delay_ms / 1000.0, self._auto_close)

    def _reset_state(self) -> None:
        self._generation += 1
        self._cancel_close()
        self.step = TxStep.FORM
        self.error_message = None


class TransactionExecution(_ExecutionBase):
    """Drives a single write mechanism through the dialog steps."""

    def __init__(
        self,
        mutation: MutationHandle,
        on_success: Optional[SuccessCallback] = None,
        on_close: Optional[CloseCallback] = None,
        auto_close_delay_ms: Optional[int] = None,
        *,
        cfg: Optional[SyncConfig] = None,
    ) -> None:
        super().__init__(
            on_success=on_success,
            on_close=on_close,
            auto_close_delay_ms=auto_close_delay_ms,
            cfg=cfg,
        )
        self.mutation = mutation
        self._last_args: Any = None
        self._has_args = False

    @property
    def can_submit(self) -> bool:
        return self.step == TxStep.FORM and not bool(self.mutation.is_pending)

    async def execute(self, args: Any) -> None:
        self._last_args = args
        self._has_args = True
        await self._run(lambda: self.mutation.mutate_async(args))

    async def retry(self) -> None:
        """Re-run the last write with the same arguments; no-op if none."""
        if not self._has_args:
            return
        args = self._last_args
        await self._run(lambda: self.mutation.mutate_async(args))

    def reset(self) -> None:
        self._reset_state()
        self._last_args = None
        self._has_args = False
        self.mutation.reset()


class MultiMutationExecution(_ExecutionBase):
    """Execution state for dialogs that pick one of several write mechanisms.

    `execute` takes a no-argument coroutine function, so the caller decides
    which write to run. The auto-close resets the dialog before `on_close`.
    """

    def __init__(
        self,
        reset_mutations: Sequence[MutationHandle],
        on_success: Optional[SuccessCallback] = None,
        on_close: Optional[CloseCallback] = None,
        auto_close_delay_ms: Optional[int] = None,
        *,
        cfg: Optional[SyncConfig] = None,
    ) -> None:
        super().__init__(
            on_success=on_success,
            on_close=on_close,
            auto_close_delay_ms=auto_close_delay_ms,
            cfg=cfg,
        )
        self.reset_mutations = list(reset_mutations)
        self._last_thunk: Optional[Thunk] = None

    @property
    def can_submit(self) -> bool:
        return self.step == TxStep.FORM and not any(bool(m.is_pending) for m in self.reset_mutations)

    async def execute(self, thunk: Thunk) -> None:
        self._last_thunk = thunk
        await self._run(thunk)

    async def retry(self) -> None:
        thunk = self._last_thunk
        if thunk is None:
            return
        await self._run(thunk)

    def reset(self) -> None:
        self._reset_state()
        self._last_thunk = None
        for m in self.reset_mutations:
            m.reset()

    def _auto_close(self) -> None:
        self._close_handle = None
        self.reset()
        if self.on_close is not None:
            self.on_close()
