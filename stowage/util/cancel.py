"""Cooperative cancellation tokens."""

import typing as t

from ..errors import AbortedError


class CancelToken:
    """Cancellation flag threaded through long running calls.

    Callbacks registered with :meth:`on_cancel` fire once when the token (or
    any parent token) is cancelled. Child tokens cancel with their parent but
    can also be cancelled on their own.
    """

    def __init__(self, parent: t.Optional["CancelToken"] = None) -> None:
        self._cancelled = False
        self._callbacks: t.List[t.Callable[[], None]] = []
        self._unlink: t.Optional[t.Callable[[], None]] = None
        if parent is not None:
            self._unlink = parent.on_cancel(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def child(self) -> "CancelToken":
        return CancelToken(self)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: t.Callable[[], None]) -> t.Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def unregister() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    def detach(self) -> None:
        """Stop following the parent token."""
        if self._unlink:
            self._unlink()
            self._unlink = None

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AbortedError("Operation cancelled")
