from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class AccountInfo:
    address: str
    balance_xrp: Decimal
    sequence: Optional[int] = None
    owner_count: Optional[int] = None
    flags: Optional[int] = None
    domain: str = ""
    previous_txn: Optional[str] = None


@dataclass(frozen=True)
class TrustLine:
    peer: str
    currency: str
    balance: Decimal
    limit: Decimal = Decimal("0")


@dataclass(frozen=True)
class LinesPage:
    lines: List[TrustLine]
    next_cursor: Optional[Any] = None


@dataclass(frozen=True)
class TxPage:
    # raw account_tx entries; normalization happens in core.normalize
    transactions: List[Dict[str, Any]]
    next_cursor: Optional[Any] = None


@dataclass(frozen=True)
class GatewayBalances:
    obligations: Dict[str, Decimal]


@dataclass(frozen=True)
class LedgerTx:
    tx_hash: str
    ledger_index: int
    timestamp: Optional[datetime]
    tx_type: str
    account: str
    destination: Optional[str] = None
    amount: Any = None          # drops string or {currency, value, issuer}
    limit_amount: Any = None
    taker_gets: Any = None
    taker_pays: Any = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
