"""
confirmation.py

Run cancellation + the one-shot confirmation wait used by ACT.

A confirmation is resolved by exactly one of: approve, deny, timeout (auto-deny) or
run cancellation (deny). Every source goes through PendingConfirmation.settle(), which
checks-and-sets the settled flag; only the first caller resolves the waiter, the rest
are no-ops. asyncio runs settle() on the loop thread, so the check-and-set is atomic
with respect to the run's continuation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Protocol

from .errors import RunCancelled
from .state import RiskLevel

logger = logging.getLogger("vigilant.confirmation")

DEFAULT_CONFIRMATION_TIMEOUT_S = 60.0


class CancellationToken:
    """Run-wide stop flag. Callbacks fire once, synchronously, on the first cancel()."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RunCancelled("Run cancelled")

    def add_callback(self, cb: Callable[[], None]) -> Callable[[], None]:
        """Register cb; returns a remover. Fires immediately if already cancelled."""
        if self._cancelled:
            cb()
            return lambda: None
        self._callbacks.append(cb)

        def _remove() -> None:
            if cb in self._callbacks:
                self._callbacks.remove(cb)

        return _remove


class PendingConfirmation:
    def __init__(self, tool: str, prompt: str, level: RiskLevel) -> None:
        self.tool = tool
        self.prompt = prompt
        self.level = level
        self.outcome: Optional[bool] = None
        self.source: str = ""
        self._settled = False
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def settled(self) -> bool:
        return self._settled

    def settle(self, approved: bool, source: str) -> bool:
        if self._settled:
            return False
        self._settled = True
        self.outcome = approved
        self.source = source
        if not self._future.done():
            self._future.set_result(approved)
        logger.info("Confirmation for %s settled by %s: %s", self.tool, source, "approved" if approved else "denied")
        return True

    def approve(self) -> bool:
        return self.settle(True, "approve")

    def deny(self) -> bool:
        return self.settle(False, "deny")

    def cancel(self) -> bool:
        return self.settle(False, "cancel")

    async def wait(self, timeout_s: float = DEFAULT_CONFIRMATION_TIMEOUT_S) -> bool:
        try:
            await asyncio.wait_for(asyncio.shield(self._future), timeout=timeout_s)
        except asyncio.TimeoutError:
            self.settle(False, "timeout")
        return bool(self.outcome)


class ConfirmationUI(Protocol):
    async def request_confirmation(self, prompt: str, level: RiskLevel) -> bool: ...


async def await_confirmation(
    ui: Optional[ConfirmationUI],
    tool: str,
    prompt: str,
    level: RiskLevel,
    token: CancellationToken,
    *,
    timeout_s: float = DEFAULT_CONFIRMATION_TIMEOUT_S,
    on_pending: Optional[Callable[[Optional[PendingConfirmation]], None]] = None,
) -> PendingConfirmation:
    """
    Suspend until the confirmation settles. `on_pending` exposes the handle so an outer
    layer can approve()/deny() directly; it is called again with None once settled.
    Without a UI and without an outer answer the wait ends in the timeout auto-deny.
    """
    pending = PendingConfirmation(tool, prompt, level)
    remove_cancel = token.add_callback(pending.cancel)
    ui_task: Optional[asyncio.Task] = None

    if ui is not None:
        ui_task = asyncio.create_task(ui.request_confirmation(prompt, level))

        def _from_ui(task: asyncio.Task) -> None:
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.error("Confirmation UI failed for %s: %s", tool, exc)
                pending.settle(False, "ui_error")
                return
            pending.settle(bool(task.result()), "ui")

        ui_task.add_done_callback(_from_ui)

    if on_pending is not None:
        on_pending(pending)
    try:
        await pending.wait(timeout_s)
    finally:
        # Task cancellation interrupts wait(); never leave the handle open.
        pending.settle(False, "cancel")
        remove_cancel()
        if ui_task is not None and not ui_task.done():
            ui_task.cancel()
        if on_pending is not None:
            on_pending(None)
    return pending
