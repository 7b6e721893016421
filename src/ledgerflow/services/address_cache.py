from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from ledgerflow.config import settings
from ledgerflow.core.dto import AccountInfo, GatewayBalances, TrustLine
from ledgerflow.core.errors import PROPAGATED_ERRORS
from ledgerflow.core.models import Activation, IssuedToken, TokenHolding, TokenSummary
from ledgerflow.core.normalize import normalize_entries, sort_txs_asc
from ledgerflow.core.timeutil import utc_now
from ledgerflow.ports.ledger_gateway_port import LedgerGatewayPort
from ledgerflow.services.request_scheduler import RequestScheduler

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    key: str
    value: Optional[T]
    complete: bool
    source: str
    fetched_at: dt.datetime = field(default_factory=utc_now)


class AddressCache(Generic[T]):
    """
    Get-or-compute memo keyed by address. Complete entries are final;
    incomplete ones are recomputed on the next request. Concurrent misses
    for one key share a single in-flight computation.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: Dict[str, CacheEntry[T]] = {}
        self._inflight: Dict[str, "asyncio.Task[CacheEntry[T]]"] = {}
        self._generation = 0
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def peek(self, key: str) -> Optional[CacheEntry[T]]:
        return self._entries.get(key)

    def put(self, entry: CacheEntry[T]) -> None:
        self._entries[entry.key] = entry

    def clear(self) -> None:
        self._entries.clear()
        self._inflight.clear()
        self._generation += 1

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[CacheEntry[T]]],
    ) -> CacheEntry[T]:
        entry = self._entries.get(key)
        if entry is not None and entry.complete:
            self.hits += 1
            return entry

        task = self._inflight.get(key)
        if task is None:
            self.misses += 1
            task = asyncio.get_running_loop().create_task(
                self._compute(key, compute, self._generation)
            )
            self._inflight[key] = task
        # one waiter being cancelled must not cancel the shared fetch
        return await asyncio.shield(task)

    async def _compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[CacheEntry[T]]],
        generation: int,
    ) -> CacheEntry[T]:
        try:
            entry = await compute()
            if generation == self._generation:
                self._entries[key] = entry
            return entry
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]


def build_token_summary(
    address: str,
    lines: List[TrustLine],
    gateway: Optional[GatewayBalances],
    pages: int,
    complete: bool,
) -> TokenSummary:
    holdings: List[TokenHolding] = []
    issued: List[IssuedToken] = []
    for ln in lines:
        if ln.balance > 0:
            holdings.append(TokenHolding(currency=ln.currency, issuer=ln.peer, balance=ln.balance))
        elif ln.balance < 0:
            # negative from our side: the peer holds our issued token
            issued.append(IssuedToken(currency=ln.currency, holder=ln.peer, outstanding=-ln.balance))

    holdings.sort(key=lambda h: h.balance, reverse=True)
    return TokenSummary(
        address=address,
        trustline_count=len(lines),
        holdings=holdings,
        issued=issued,
        obligations=dict(gateway.obligations) if gateway else {},
        lines_pages=pages,
        lines_complete=complete,
        source="account_lines+gateway_balances" if gateway else "account_lines",
    )


class AddressCacheService:
    """
    The three per-address caches shared across crawls: account info,
    activation (first funding payment) and token summary. Fetches go through
    the caller's RequestScheduler when one is given.
    """

    def __init__(
        self,
        gateway: LedgerGatewayPort,
        activation_page_limit: int = settings.ACTIVATION_PAGE_LIMIT,
        activation_max_pages: int = settings.ACTIVATION_MAX_PAGES,
        activation_max_tx_scan: int = settings.ACTIVATION_MAX_TX_SCAN,
        lines_max_pages: int = settings.LINES_MAX_PAGES,
    ) -> None:
        self._gateway = gateway
        self._activation_page_limit = activation_page_limit
        self._activation_max_pages = activation_max_pages
        self._activation_max_tx_scan = activation_max_tx_scan
        self._lines_max_pages = lines_max_pages

        self.account_info: AddressCache[AccountInfo] = AddressCache("account_info")
        self.activation: AddressCache[Activation] = AddressCache("activation")
        self.token_summary: AddressCache[TokenSummary] = AddressCache("token_summary")

    def clear(self) -> None:
        self.account_info.clear()
        self.activation.clear()
        self.token_summary.clear()
        logger.info("address caches cleared")

    async def _run(
        self,
        scheduler: Optional[RequestScheduler],
        operation: Callable[[], Awaitable[Any]],
        priority: int,
        max_retries: int,
    ) -> Any:
        if scheduler is None:
            return await operation()
        return await scheduler.enqueue(operation, priority=priority, max_retries=max_retries)

    # ---------- account info ----------

    async def get_account_info(
        self,
        address: str,
        scheduler: Optional[RequestScheduler] = None,
        max_retries: int = settings.SCHEDULER_MAX_RETRIES,
    ) -> CacheEntry[AccountInfo]:
        async def compute() -> CacheEntry[AccountInfo]:
            try:
                info = await self._run(
                    scheduler,
                    lambda: self._gateway.account_info(address),
                    settings.PRIORITY_ACCOUNT_INFO,
                    max_retries,
                )
            except PROPAGATED_ERRORS:
                raise
            except Exception as e:
                logger.warning("account_info failed for %s: %r", address, e)
                return CacheEntry(address, None, False, "error")
            return CacheEntry(address, info, True, "account_info" if info else "not_found")

        return await self.account_info.get_or_compute(address, compute)

    # ---------- activation ----------

    async def get_activation(
        self,
        address: str,
        scheduler: Optional[RequestScheduler] = None,
        max_retries: int = settings.SCHEDULER_MAX_RETRIES,
    ) -> CacheEntry[Activation]:
        """
        Oldest-first scan for the first Payment into address. The three
        outcomes stay distinct: found (complete), history exhausted without
        one (value None, complete), budget spent (value None, incomplete).
        """

        async def compute() -> CacheEntry[Activation]:
            pages = 0
            scanned = 0
            cursor = None
            while True:
                if pages >= self._activation_max_pages or scanned >= self._activation_max_tx_scan:
                    logger.info(
                        "activation scan budget spent for %s (%d pages, %d txs)", address, pages, scanned
                    )
                    return CacheEntry(address, None, False, "budget")
                try:
                    page = await self._run(
                        scheduler,
                        lambda c=cursor: self._gateway.paged_transactions(
                            address, cursor=c, forward=True, limit=self._activation_page_limit
                        ),
                        settings.PRIORITY_ACTIVATION,
                        max_retries,
                    )
                except PROPAGATED_ERRORS:
                    raise
                except Exception as e:
                    logger.warning("activation scan failed for %s: %r", address, e)
                    return CacheEntry(address, None, False, "error")

                pages += 1
                txs = sort_txs_asc(normalize_entries(page.transactions))
                scanned += len(txs)
                for tx in txs:
                    if tx.tx_type == "Payment" and tx.destination == address and tx.account != address:
                        act = Activation(
                            activator=tx.account,
                            tx_hash=tx.tx_hash,
                            ledger_index=tx.ledger_index,
                            timestamp=tx.timestamp,
                        )
                        return CacheEntry(address, act, True, "scan")

                cursor = page.next_cursor
                if not cursor or not page.transactions:
                    return CacheEntry(address, None, True, "exhausted")

        return await self.activation.get_or_compute(address, compute)

    # ---------- token summary ----------

    async def get_token_summary(
        self,
        address: str,
        scheduler: Optional[RequestScheduler] = None,
        max_retries: int = settings.SCHEDULER_MAX_RETRIES,
    ) -> CacheEntry[TokenSummary]:
        async def compute() -> CacheEntry[TokenSummary]:
            lines: List[TrustLine] = []
            pages = 0
            cursor = None
            complete = False
            try:
                while pages < self._lines_max_pages:
                    page = await self._run(
                        scheduler,
                        lambda c=cursor: self._gateway.account_lines(address, cursor=c),
                        settings.PRIORITY_LINES,
                        max_retries,
                    )
                    pages += 1
                    lines.extend(page.lines)
                    cursor = page.next_cursor
                    if not cursor:
                        complete = True
                        break
            except PROPAGATED_ERRORS:
                raise
            except Exception as e:
                logger.warning("account_lines failed for %s: %r", address, e)
                summary = build_token_summary(address, lines, None, pages, False)
                return CacheEntry(address, summary, False, "error")

            gateway = None
            try:
                gateway = await self._run(
                    scheduler,
                    lambda: self._gateway.gateway_balances(address),
                    settings.PRIORITY_LINES,
                    0,
                )
            except PROPAGATED_ERRORS:
                raise
            except Exception as e:
                # best effort: many servers do not expose gateway_balances
                logger.debug("gateway_balances unavailable for %s: %s", address, e)

            summary = build_token_summary(address, lines, gateway, pages, complete)
            return CacheEntry(address, summary, complete, summary.source)

        return await self.token_summary.get_or_compute(address, compute)
