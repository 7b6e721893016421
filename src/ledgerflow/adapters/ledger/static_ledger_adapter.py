from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ledgerflow.config import settings
from ledgerflow.core.dto import AccountInfo, GatewayBalances, LinesPage, TrustLine, TxPage
from ledgerflow.core.normalize import normalize_tx_entry
from ledgerflow.ports.ledger_gateway_port import LedgerGatewayPort


class StaticLedgerAdapter(LedgerGatewayPort):
    """
    In-memory gateway for dev/testing. Transactions are raw account_tx
    entries; an entry is listed for every account it touches (sender or
    destination), newest first unless forward=True. Cursors are plain offsets.
    """

    def __init__(self,
                 transactions: Optional[List[Dict[str, Any]]] = None,
                 accounts: Optional[Dict[str, AccountInfo]] = None,
                 lines: Optional[Dict[str, List[TrustLine]]] = None,
                 obligations: Optional[Dict[str, Dict[str, Decimal]]] = None,
                 page_size: Optional[int] = None,
                 ):
        self._txs = list(transactions or [])
        self._accounts = dict(accounts or {})
        self._lines = dict(lines or {})
        self._obligations = dict(obligations or {})
        self._page_size = page_size
        self.calls: List[tuple] = []

    @classmethod
    def from_fixture(cls, path: str) -> "StaticLedgerAdapter":
        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        accounts = {}
        for addr, info in (data.get("accounts") or {}).items():
            accounts[addr] = AccountInfo(
                address=addr,
                balance_xrp=Decimal(str(info.get("balance_xrp", "0"))),
                sequence=info.get("sequence"),
                owner_count=info.get("owner_count"),
                domain=info.get("domain") or "",
            )
        lines = {
            addr: [
                TrustLine(
                    peer=ln["peer"],
                    currency=ln["currency"],
                    balance=Decimal(str(ln.get("balance", "0"))),
                    limit=Decimal(str(ln.get("limit", "0"))),
                )
                for ln in rows
            ]
            for addr, rows in (data.get("lines") or {}).items()
        }
        return cls(
            transactions=data.get("transactions") or [],
            accounts=accounts,
            lines=lines,
            page_size=data.get("page_size"),
        )

    def _touches(self, entry: Dict[str, Any], address: str) -> bool:
        tx = normalize_tx_entry(entry)
        if tx is None:
            return False
        return tx.account == address or tx.destination == address

    async def account_info(self, address):
        self.calls.append(("account_info", address))
        return self._accounts.get(address)

    async def account_lines(self, address, cursor=None):
        self.calls.append(("account_lines", address, cursor))
        rows = self._lines.get(address, [])
        return self._page(rows, cursor, lambda items, nxt: LinesPage(lines=items, next_cursor=nxt))

    async def paged_transactions(self, address, cursor=None, forward=False,
                                 ledger_min=None, ledger_max=None, limit=settings.PAGE_LIMIT):
        self.calls.append(("paged_transactions", address, cursor, forward))
        items = []
        for entry in self._txs:
            if not self._touches(entry, address):
                continue
            tx = normalize_tx_entry(entry)
            if ledger_min is not None and ledger_min >= 0 and tx.ledger_index < ledger_min:
                continue
            if ledger_max is not None and ledger_max >= 0 and tx.ledger_index > ledger_max:
                continue
            items.append(entry)

        # insertion order stands in for ledger order on equal indexes
        ordered = sorted(enumerate(items), key=lambda p: (normalize_tx_entry(p[1]).ledger_index, p[0]))
        items = [e for _, e in ordered]
        if not forward:
            items.reverse()
        size = self._page_size or limit
        return self._page(items, cursor, lambda rows, nxt: TxPage(transactions=rows, next_cursor=nxt), size)

    async def gateway_balances(self, address):
        self.calls.append(("gateway_balances", address))
        obligations = self._obligations.get(address)
        if obligations is None:
            return None
        return GatewayBalances(obligations=dict(obligations))

    def _page(self, rows, cursor, make, size: Optional[int] = None):
        size = size or self._page_size or len(rows) or 1
        start = int(cursor or 0)
        chunk = rows[start:start + size]
        nxt = start + size if start + size < len(rows) else None
        return make(chunk, nxt)

    def count_calls(self, method: str, address: Optional[str] = None) -> int:
        return sum(
            1 for c in self.calls
            if c[0] == method and (address is None or c[1] == address)
        )
