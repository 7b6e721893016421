from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ledgerflow.core.amounts import Amount, is_valid_address, parse_amount
from ledgerflow.core.dto import LedgerTx
from ledgerflow.core.enums import EdgeKind
from ledgerflow.core.models import Constraints
from ledgerflow.core.timeutil import parse_iso_datetime, ripple_time_to_datetime


AddressValidator = Callable[[str], bool]


def normalize_tx_entry(entry: Any) -> Optional[LedgerTx]:
    """
    Flattens one account_tx entry ({tx|tx_json|transaction, meta, ...} or a
    bare transaction object) into a LedgerTx.
    """
    if not isinstance(entry, dict):
        return None
    t0 = entry.get("tx") or entry.get("tx_json") or entry.get("transaction") or entry
    if not isinstance(t0, dict):
        return None
    meta = entry.get("meta") or entry.get("metaData") or t0.get("meta") or t0.get("metaData") or {}

    tx_type = str(t0.get("TransactionType") or t0.get("type") or "Unknown")

    amount = t0.get("Amount")
    if amount is None:
        amount = t0.get("DeliverMax")
    if amount is None and tx_type == "Payment" and isinstance(meta, dict):
        amount = meta.get("delivered_amount")

    ledger_raw = t0.get("ledger_index") or t0.get("LedgerIndex") or entry.get("ledger_index") or 0
    try:
        ledger_index = int(ledger_raw)
    except (TypeError, ValueError):
        ledger_index = 0

    date_raw = t0.get("date", entry.get("date"))
    timestamp = ripple_time_to_datetime(date_raw) if date_raw is not None else None
    if timestamp is None and entry.get("close_time_iso"):
        try:
            timestamp = parse_iso_datetime(entry.get("close_time_iso"))
        except ValueError:
            timestamp = None

    return LedgerTx(
        tx_hash=str(t0.get("hash") or entry.get("hash") or ""),
        ledger_index=ledger_index,
        timestamp=timestamp,
        tx_type=tx_type,
        account=str(t0.get("Account") or t0.get("account") or ""),
        destination=t0.get("Destination") or t0.get("destination") or None,
        amount=amount,
        limit_amount=t0.get("LimitAmount"),
        taker_gets=t0.get("TakerGets"),
        taker_pays=t0.get("TakerPays"),
        raw=t0,
    )


def normalize_entries(entries: Iterable[Any]) -> List[LedgerTx]:
    out: List[LedgerTx] = []
    for entry in entries:
        tx = normalize_tx_entry(entry)
        if tx is not None:
            out.append(tx)
    return out


def sort_txs_asc(txs: List[LedgerTx]) -> List[LedgerTx]:
    # stable: equal ledgers keep page order
    return sorted(txs, key=lambda t: t.ledger_index)


def transaction_amount(tx: LedgerTx) -> Optional[Amount]:
    if tx.tx_type == "TrustSet":
        raw = tx.limit_amount
    elif tx.tx_type == "OfferCreate":
        raw = tx.taker_gets
    else:
        raw = tx.amount
    if raw is None:
        return None
    return parse_amount(raw)


def within_constraints(tx: LedgerTx, constraints: Constraints) -> bool:
    c = constraints
    if c.ledger_min is not None and tx.ledger_index < c.ledger_min:
        return False
    if c.ledger_max is not None and tx.ledger_index > c.ledger_max:
        return False

    if tx.timestamp is not None:
        if c.start_date is not None and tx.timestamp < c.start_date:
            return False
        if c.end_date is not None and tx.timestamp > c.end_date:
            return False

    if c.min_xrp is not None:
        amt = transaction_amount(tx)
        if amt is not None and amt.is_xrp and amt.value < c.min_xrp:
            return False

    return True


def _issuer_of(raw: Any) -> Optional[str]:
    if isinstance(raw, dict):
        issuer = raw.get("issuer")
        return str(issuer) if issuer else None
    return None


def extract_counterparty(
    tx: LedgerTx,
    validator: AddressValidator = is_valid_address,
) -> Optional[Tuple[str, EdgeKind]]:
    """
    Payment -> Destination; TrustSet -> LimitAmount.issuer;
    OfferCreate -> TakerGets.issuer, then TakerPays.issuer;
    anything else with a Destination -> Destination.
    """
    if tx.tx_type == "Payment":
        candidates = [(tx.destination, EdgeKind.PAYMENT)]
    elif tx.tx_type == "TrustSet":
        candidates = [(_issuer_of(tx.limit_amount), EdgeKind.TRUST_SET)]
    elif tx.tx_type == "OfferCreate":
        candidates = [
            (_issuer_of(tx.taker_gets), EdgeKind.OFFER_CREATE),
            (_issuer_of(tx.taker_pays), EdgeKind.OFFER_CREATE),
        ]
    else:
        candidates = [(tx.destination, EdgeKind.OTHER)]

    for addr, kind in candidates:
        if not addr:
            continue
        if not validator(addr):
            continue
        if addr == tx.account:
            continue
        return addr, kind
    return None


def parse_address_list(text: str, validator: AddressValidator = is_valid_address) -> Tuple[List[str], List[str]]:
    """
    Splits newline/comma separated input. Returns (valid deduped in order,
    rejected).
    """
    valid: Dict[str, None] = {}
    rejected: List[str] = []
    for part in str(text or "").replace("\n", ",").split(","):
        addr = part.strip()
        if not addr:
            continue
        if validator(addr):
            valid.setdefault(addr, None)
        else:
            rejected.append(addr)
    return list(valid), rejected
