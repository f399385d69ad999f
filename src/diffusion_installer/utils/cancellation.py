"""Cooperative cancellation primitive shared by the executor and its workers."""

import asyncio

from diffusion_installer.exceptions import OperationCancelledError


class CancellationToken:
    """A one-shot cancellation flag that can also be awaited.

    Cancellation is cooperative: code paths that never call
    :meth:`raise_if_cancelled` (or await :meth:`wait`) run to completion.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError()

    async def wait(self) -> None:
        await self._event.wait()


def raise_if_cancelled(token: CancellationToken | None) -> None:
    """Raise OperationCancelledError if ``token`` is set; ``None`` means never cancelled."""
    if token is not None:
        token.raise_if_cancelled()
