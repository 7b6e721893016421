from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from ledgerflow.config import settings
from ledgerflow.core.dto import AccountInfo, GatewayBalances, LinesPage, TxPage


class LedgerGatewayPort(ABC):
    """
    Abstract Class for fetching ledger facts for crawling.

    Every call may fail transiently and then raises DataSourceError. A page
    with next_cursor None is only ever returned for a successful, exhausted
    listing; failures are never reported as an empty page.
    """

    # --- account metadata ---

    @abstractmethod
    async def account_info(self, address: str) -> Optional[AccountInfo]:
        # None = account not found
        raise NotImplementedError

    # --- trust lines ---

    @abstractmethod
    async def account_lines(self, address: str, cursor: Optional[Any] = None) -> LinesPage:
        raise NotImplementedError

    # --- transaction history ---

    @abstractmethod
    async def paged_transactions(
        self,
        address: str,
        cursor: Optional[Any] = None,
        forward: bool = False,
        ledger_min: Optional[int] = None,
        ledger_max: Optional[int] = None,
        limit: int = settings.PAGE_LIMIT,
    ) -> TxPage:
        raise NotImplementedError

    # --- issuer obligations (optional capability) ---

    async def gateway_balances(self, address: str) -> Optional[GatewayBalances]:
        return None
