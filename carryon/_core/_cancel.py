from __future__ import annotations

import typing as tp

import anyio

from carryon._exceptions import CancellationError


class CancelToken:
    """
    Cancellation signal for one logical request.

    `cancel()` may be called from any task of the same event loop. Callbacks
    registered with `add_callback` run synchronously, once, with the reason.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: tp.Any = None
        self._event: tp.Optional[anyio.Event] = None
        self._callbacks: tp.List[tp.Callable[[tp.Any], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> tp.Any:
        return self._reason

    def cancel(self, reason: tp.Any = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason if reason is not None else CancellationError()
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self._reason)

    def add_callback(self, callback: tp.Callable[[tp.Any], None]) -> None:
        if self._cancelled:
            callback(self._reason)
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: tp.Callable[[tp.Any], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def wait(self) -> None:
        if self._cancelled:
            return
        # anyio events must be created inside a running event loop
        if self._event is None:
            self._event = anyio.Event()
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError(self._reason)
