from __future__ import annotations

"""Keeps the wallet's active network in step with the user's network selection.

Phases:
  idle -> target_set -> waiting_for_adapter -> ready -> switching -> idle

Selecting a network asks the wallet state to load that network's adapter and
queues it as the switch target. Once the loaded adapter matches the target
(and is done loading) the wallet is asked to switch chains in place, so the
user stays connected. With `auto_switch` (the default) entering `ready`
schedules that switch on the running loop; otherwise the host drives it with
`switch_if_ready()`. Re-selecting the network that was last synced is a
no-op.
"""

import asyncio
import logging
from typing import Optional

from ledgersync.ledger.adapters import ChainSwitcher, LedgerAdapter, WalletState
from ledgersync.runtime.metrics import inc_counter
from ledgersync.runtime.sync_logging import log_event

log = logging.getLogger("ledgersync.network_sync")


class SwitchPhase:
    IDLE = "idle"
    TARGET_SET = "target_set"
    WAITING_FOR_ADAPTER = "waiting_for_adapter"
    READY = "ready"
    SWITCHING = "switching"


class _NotInitialized:
    def __repr__(self) -> str:
        return "NOT_INITIALIZED"


# "never synced" is distinct from "synced to no network" (None).
NOT_INITIALIZED = _NotInitialized()


class NetworkSwitchReconciler:
    def __init__(self, wallet: WalletState, switcher: ChainSwitcher, *, auto_switch: bool = True) -> None:
        self.wallet = wallet
        self.switcher = switcher
        self.auto_switch = bool(auto_switch)
        self.phase: str = SwitchPhase.IDLE
        self.target_network_id: Optional[str] = None
        self.adapter_ready = False
        self.last_synced_network_id: object = NOT_INITIALIZED
        self._adapter: Optional[LedgerAdapter] = None
        self._adapter_loading = False
        self._switch_task: Optional[asyncio.Task] = None

    @property
    def switch_pending(self) -> bool:
        return self._switch_task is not None and not self._switch_task.done()

    @property
    def selected_network_id(self) -> Optional[str]:
        v = self.last_synced_network_id
        return None if v is NOT_INITIALIZED else v  # type: ignore[return-value]

    @property
    def adapter(self) -> Optional[LedgerAdapter]:
        return self._adapter

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def select_network(self, network_id: Optional[str]) -> bool:
        """Sync a new selection to the wallet; returns False when unchanged."""
        previous = self.last_synced_network_id
        if previous is not NOT_INITIALIZED and network_id == previous:
            return False

        log_event(
            log,
            "network_changed",
            previous=(None if previous is NOT_INITIALIZED else previous),
            current=network_id,
        )

        self.cancel_pending()
        self.adapter_ready = False
        self.target_network_id = network_id or None
        self.last_synced_network_id = network_id
        if self.target_network_id is not None:
            self.phase = SwitchPhase.TARGET_SET
        self.wallet.set_active_network_id(network_id)
        self._evaluate()
        return True

    def on_adapter_update(self, adapter: Optional[LedgerAdapter], is_loading: bool) -> None:
        self._adapter = adapter
        self._adapter_loading = bool(is_loading)
        self._evaluate()

    def on_wallet_reconnected(self, chain_network_id: Optional[str]) -> bool:
        """Re-queue the selected network if the wallet came back on another chain."""
        selected = self.selected_network_id
        if selected is None or chain_network_id == selected:
            return False
        if self.target_network_id == selected:
            return False
        log_event(log, "network_switch_requeued", selected=selected, wallet_chain=chain_network_id)
        self.target_network_id = selected
        self.adapter_ready = False
        self._evaluate()
        return True

    def _evaluate(self) -> None:
        target = self.target_network_id
        if target is None:
            if self.adapter_ready:
                log_event(log, "network_target_cleared")
            self.adapter_ready = False
            self.phase = SwitchPhase.IDLE
            return
        if self.phase == SwitchPhase.SWITCHING:
            return

        was_ready = self.phase == SwitchPhase.READY
        adapter = self._adapter
        if adapter is not None and adapter.network_id == target and not self._adapter_loading:
            if not self.adapter_ready:
                log_event(log, "network_adapter_ready", network_id=target)
            self.adapter_ready = True
            self.phase = SwitchPhase.READY
            if not was_ready and self.auto_switch:
                self._schedule_switch()
        else:
            self.adapter_ready = False
            self.phase = SwitchPhase.WAITING_FOR_ADAPTER

    def _schedule_switch(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log_event(log, "network_switch_not_scheduled", level=logging.DEBUG, reason="no_running_loop")
            return
        if self.switch_pending and self._switch_task is not asyncio.current_task():
            return
        self._switch_task = loop.create_task(self.switch_if_ready(), name="network-switch")

    def cancel_pending(self) -> None:
        """Cancel a scheduled (or in-flight) automatic switch."""
        task = self._switch_task
        self._switch_task = None
        if task is not None and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Switching
    # ------------------------------------------------------------------

    async def switch_if_ready(self) -> bool:
        """Ask the wallet to switch chains once the target adapter is ready.

        Returns True when the pending switch completed and the target was
        cleared. A failed switch is logged and stays queued.
        """
        adapter = self._adapter
        target = self.target_network_id
        if self.phase != SwitchPhase.READY or adapter is None or target is None:
            return False
        if adapter.network_id != target:
            return False

        self.phase = SwitchPhase.SWITCHING
        if adapter.supports_network_switch:
            try:
                await self.switcher.switch_network(adapter, target)
            except asyncio.CancelledError:
                if self.phase == SwitchPhase.SWITCHING:
                    self.phase = SwitchPhase.READY
                raise
            except Exception as e:
                log_event(log, "network_switch_failed", level=logging.WARNING, network_id=target, error=str(e))
                self.phase = SwitchPhase.READY
                self._evaluate()
                return False

        if self.target_network_id != target:
            # Selection moved on while the wallet was switching.
            self.phase = SwitchPhase.TARGET_SET
            self._evaluate()
            return False

        self.target_network_id = None
        self.adapter_ready = False
        self.phase = SwitchPhase.IDLE
        inc_counter("network_switch_completed")
        log_event(log, "network_switch_completed", network_id=target, in_place=bool(adapter.supports_network_switch))
        return True
