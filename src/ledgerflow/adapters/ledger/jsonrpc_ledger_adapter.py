import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests

from ledgerflow.config.settings import (
    LEDGER_RPC_URL,
    LEDGER_TIMEOUT_SEC,
    LEDGER_REQUESTS_PER_SEC,
    PAGE_LIMIT,
)

from ledgerflow.adapters.ledger.rate_limiter import SimpleRateLimiter
from ledgerflow.core.amounts import drops_to_xrp, hex_to_ascii, to_decimal
from ledgerflow.core.errors import DataSourceError, RateLimitError
from ledgerflow.ports.ledger_gateway_port import LedgerGatewayPort
from ledgerflow.core.dto import AccountInfo, GatewayBalances, LinesPage, TrustLine, TxPage

logger = logging.getLogger(__name__)

_THROTTLE_ERRORS = {"slowDown", "tooBusy"}
_NOT_FOUND_ERRORS = {"actNotFound"}


class JsonRpcLedgerAdapter(LedgerGatewayPort):
    """
    rippled JSON-RPC over HTTP. One attempt per call: retry and backoff
    belong to the RequestScheduler. Blocking requests run on a worker thread.
    """

    def __init__(
        self,
        url: str = LEDGER_RPC_URL,
        timeout_sec: float = LEDGER_TIMEOUT_SEC,
        requests_per_sec: float = LEDGER_REQUESTS_PER_SEC,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._url = url if url.endswith("/") else url + "/"
        self._timeout = timeout_sec
        self._rl = SimpleRateLimiter(requests_per_sec)
        self._session = session or requests.Session()

    # ---------- internal ----------

    def _call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        body = {"method": method, "params": [params]}
        self._rl.wait()
        try:
            resp = self._session.post(self._url, json=body, timeout=self._timeout)
        except requests.RequestException as e:
            raise DataSourceError(f"{method} transport error: {e}") from e

        if resp.status_code in (429, 503):
            raise RateLimitError(f"{method} throttled: HTTP {resp.status_code}")
        try:
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise DataSourceError(f"{method} bad response: {e}") from e

        result = data.get("result") if isinstance(data, dict) else None
        if not isinstance(result, dict):
            raise DataSourceError(f"{method} returned no result: {data}")
        return result

    @staticmethod
    def _error_of(result: Dict[str, Any]) -> Optional[str]:
        if result.get("status") == "error" or result.get("error"):
            return str(result.get("error") or "unknown")
        return None

    async def _request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        logger.debug("rpc %s %s", method, params.get("account"))
        result = await asyncio.to_thread(self._call, method, params)
        err = self._error_of(result)
        if err in _THROTTLE_ERRORS:
            raise RateLimitError(f"{method}: {err}")
        return result

    # ---------- port methods ----------

    async def account_info(self, address: str) -> Optional[AccountInfo]:
        result = await self._request("account_info", {
            "account": address,
            "ledger_index": "validated",
        })
        err = self._error_of(result)
        if err in _NOT_FOUND_ERRORS:
            return None
        if err:
            raise DataSourceError(f"account_info failed: {err}")

        info = result.get("account_data") or {}
        return AccountInfo(
            address=str(info.get("Account") or address),
            balance_xrp=drops_to_xrp(info.get("Balance") or "0"),
            sequence=info.get("Sequence"),
            owner_count=info.get("OwnerCount"),
            flags=info.get("Flags"),
            domain=hex_to_ascii(info.get("Domain") or ""),
            previous_txn=info.get("PreviousTxnID"),
        )

    async def account_lines(self, address: str, cursor: Optional[Any] = None) -> LinesPage:
        params: Dict[str, Any] = {"account": address, "limit": 400}
        if cursor:
            params["marker"] = cursor
        result = await self._request("account_lines", params)
        err = self._error_of(result)
        if err in _NOT_FOUND_ERRORS:
            return LinesPage(lines=[], next_cursor=None)
        if err:
            raise DataSourceError(f"account_lines failed: {err}")

        lines: List[TrustLine] = []
        for ln in result.get("lines") or []:
            lines.append(
                TrustLine(
                    peer=str(ln.get("account") or ""),
                    currency=str(ln.get("currency") or ""),
                    balance=to_decimal(ln.get("balance")) or Decimal("0"),
                    limit=to_decimal(ln.get("limit")) or Decimal("0"),
                )
            )
        return LinesPage(lines=lines, next_cursor=result.get("marker") or None)

    async def paged_transactions(
        self,
        address: str,
        cursor: Optional[Any] = None,
        forward: bool = False,
        ledger_min: Optional[int] = None,
        ledger_max: Optional[int] = None,
        limit: int = PAGE_LIMIT,
    ) -> TxPage:
        params: Dict[str, Any] = {
            "account": address,
            "limit": limit,
            "forward": bool(forward),
            "ledger_index_min": -1 if ledger_min is None else ledger_min,
            "ledger_index_max": -1 if ledger_max is None else ledger_max,
        }
        if cursor:
            params["marker"] = cursor
        result = await self._request("account_tx", params)
        err = self._error_of(result)
        if err in _NOT_FOUND_ERRORS:
            return TxPage(transactions=[], next_cursor=None)
        if err:
            raise DataSourceError(f"account_tx failed: {err}")

        txs = result.get("transactions")
        if not isinstance(txs, list):
            raise DataSourceError(f"account_tx returned no transactions list for {address}")
        return TxPage(transactions=txs, next_cursor=result.get("marker") or None)

    async def gateway_balances(self, address: str) -> Optional[GatewayBalances]:
        result = await self._request("gateway_balances", {
            "account": address,
            "ledger_index": "validated",
        })
        err = self._error_of(result)
        if err in _NOT_FOUND_ERRORS:
            return None
        if err:
            raise DataSourceError(f"gateway_balances failed: {err}")

        obligations = {}
        for cur, val in (result.get("obligations") or {}).items():
            dec = to_decimal(val)
            if dec is not None:
                obligations[str(cur)] = dec
        return GatewayBalances(obligations=obligations)
