from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple


XRP = "XRP"
DROPS_PER_XRP = Decimal("1000000")

# classic address shape: "r" + base58 body
_ADDRESS_SHAPE_RE = re.compile(r"^r[1-9A-Za-z]{1,34}$")
# ripple base58 alphabet (no 0, O, I, l), 25..35 chars total
_ADDRESS_STRICT_RE = re.compile(r"^r[1-9A-HJ-NP-Za-km-z]{24,34}$")


@dataclass(frozen=True)
class Amount:
    value: Decimal
    currency: str = XRP
    issuer: Optional[str] = None

    @property
    def is_xrp(self) -> bool:
        return self.currency == XRP

    def key(self) -> Tuple[str, Optional[str], Decimal]:
        return (self.currency, self.issuer, self.value)


ZERO_XRP = Amount(Decimal("0"), XRP, None)


def is_valid_address(addr: Any, strict: bool = False) -> bool:
    s = str(addr or "").strip()
    if not s:
        return False
    pattern = _ADDRESS_STRICT_RE if strict else _ADDRESS_SHAPE_RE
    return bool(pattern.match(s))


def to_decimal(val: Any) -> Optional[Decimal]:
    if val is None or isinstance(val, bool):
        return None
    try:
        return Decimal(str(val))
    except (InvalidOperation, ValueError):
        return None


def drops_to_xrp(drops: Any) -> Decimal:
    d = to_decimal(drops)
    if d is None:
        return Decimal("0")
    return d / DROPS_PER_XRP


def parse_amount(raw: Any) -> Amount:
    """
    XRPL amounts are either a drops string ("1000000" == 1 XRP) or an
    issued-currency object {"currency", "value", "issuer"}.
    """
    if isinstance(raw, (str, int)) and not isinstance(raw, bool):
        return Amount(drops_to_xrp(raw), XRP, None)
    if isinstance(raw, dict) and raw.get("value") is not None:
        value = to_decimal(raw.get("value")) or Decimal("0")
        return Amount(value, str(raw.get("currency") or "???"), raw.get("issuer") or None)
    return ZERO_XRP


def currency_code(code: str) -> str:
    # 40-hex currency codes are ASCII-padded names
    if len(code) == 40 and all(c in "0123456789ABCDEFabcdef" for c in code):
        text = hex_to_ascii(code)
        return text or code
    return code


def hex_to_ascii(hex_str: str) -> str:
    if not hex_str:
        return ""
    out = []
    for i in range(0, len(hex_str) - 1, 2):
        try:
            code = int(hex_str[i:i + 2], 16)
        except ValueError:
            return ""
        if code:
            out.append(chr(code))
    return "".join(out)


def dec_to_str(x: Decimal) -> str:
    # keep as string for JSON precision safety
    return format(x, "f")


def format_amount(amount: Amount) -> str:
    if amount.is_xrp:
        return f"{amount.value:.6f} XRP"
    iss = f" ({amount.issuer[:8]}...)" if amount.issuer else ""
    return f"{amount.value:.6f} {currency_code(amount.currency)}{iss}"


def short_addr(addr: str) -> str:
    s = str(addr or "")
    if len(s) < 12:
        return s
    return f"{s[:6]}...{s[-4:]}"
