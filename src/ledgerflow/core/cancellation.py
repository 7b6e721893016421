from __future__ import annotations

from ledgerflow.core.errors import ScanCancelledError


class CancellationToken:
    """
    Shared stop flag for one crawl. The scheduler and the builder both hold
    the same token and check it before starting new work.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ScanCancelledError(f"Request cancelled: {self._reason}")
