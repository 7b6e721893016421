from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ledgerflow.config import settings
from ledgerflow.core.amounts import Amount, to_decimal
from ledgerflow.core.dto import AccountInfo, LedgerTx
from ledgerflow.core.enums import EdgeKind, FindingKind, Severity
from ledgerflow.core.errors import GraphInvariantError
from ledgerflow.core.timeutil import parse_iso_datetime



# Configuration models

@dataclass(frozen=True)
class Constraints:
    """
    Per-crawl transaction filter. Applied at every fetch boundary.
    """

    ledger_min: Optional[int] = None
    ledger_max: Optional[int] = None
    start_date: Optional[dt.datetime] = None
    end_date: Optional[dt.datetime] = None
    min_xrp: Optional[Decimal] = None

    @classmethod
    def from_values(
        cls,
        ledger_min: Any = None,
        ledger_max: Any = None,
        start_date: Any = None,
        end_date: Any = None,
        min_xrp: Any = None,
    ) -> "Constraints":
        min_dec = to_decimal(min_xrp) if min_xrp not in (None, "") else None
        return cls(
            ledger_min=_nullable_int(ledger_min),
            ledger_max=_nullable_int(ledger_max),
            start_date=parse_iso_datetime(start_date),
            end_date=parse_iso_datetime(end_date, end_of_day=True),
            min_xrp=min_dec if min_dec and min_dec > 0 else None,
        )


def _nullable_int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _clamp(n: Any, lo: int, hi: int, default: int) -> int:
    try:
        val = int(n)
    except (TypeError, ValueError):
        return default
    if val <= 0:
        return default
    return max(lo, min(hi, val))


@dataclass(frozen=True)
class TraceParams:
    """
    User input / run configuration for one crawl. Out-of-range knobs are
    clamped; non-positive values fall back to defaults.
    """

    max_depth: int = settings.DEFAULT_DEPTH
    per_node: int = settings.DEFAULT_PER_NODE
    max_accounts: int = settings.DEFAULT_MAX_ACCOUNTS
    max_edges: int = settings.DEFAULT_MAX_EDGES
    constraints: Constraints = field(default_factory=Constraints)

    page_limit: int = settings.PAGE_LIMIT
    max_pages_per_node: int = settings.MAX_PAGES_PER_NODE
    max_tx_scan_per_node: int = settings.MAX_TX_SCAN_PER_NODE
    max_total_pages: int = 0          # 0 = unlimited
    max_total_tx_scan: int = 0        # 0 = unlimited
    max_retries: int = settings.SCHEDULER_MAX_RETRIES

    def __post_init__(self) -> None:
        object.__setattr__(self, "max_depth", _clamp(self.max_depth, 1, 10, settings.DEFAULT_DEPTH))
        object.__setattr__(self, "per_node", _clamp(self.per_node, 1, 500, settings.DEFAULT_PER_NODE))
        object.__setattr__(self, "max_accounts", _clamp(self.max_accounts, 1, 2000, settings.DEFAULT_MAX_ACCOUNTS))
        object.__setattr__(self, "max_edges", _clamp(self.max_edges, 1, 20000, settings.DEFAULT_MAX_EDGES))
        object.__setattr__(self, "page_limit", _clamp(self.page_limit, 1, 400, settings.PAGE_LIMIT))
        object.__setattr__(self, "max_total_pages", max(0, int(self.max_total_pages or 0)))
        object.__setattr__(self, "max_total_tx_scan", max(0, int(self.max_total_tx_scan or 0)))
        object.__setattr__(self, "max_retries", max(0, int(self.max_retries)))



# Account metadata

@dataclass(frozen=True)
class Activation:
    activator: str
    tx_hash: str
    ledger_index: int
    timestamp: Optional[dt.datetime]


@dataclass(frozen=True)
class TokenHolding:
    currency: str
    issuer: str
    balance: Decimal


@dataclass(frozen=True)
class IssuedToken:
    currency: str
    holder: str
    outstanding: Decimal


@dataclass
class TokenSummary:
    address: str
    trustline_count: int = 0
    holdings: List[TokenHolding] = field(default_factory=list)
    issued: List[IssuedToken] = field(default_factory=list)
    obligations: Dict[str, Decimal] = field(default_factory=dict)
    lines_pages: int = 0
    lines_complete: bool = False
    source: str = "account_lines"

    @property
    def top_trustlines(self) -> List[TokenHolding]:
        return self.holdings[:18]

    def outstanding_by_currency(self) -> Dict[str, Decimal]:
        # issuer-side estimate: gateway obligations win over summed lines
        totals: Dict[str, Decimal] = {}
        for t in self.issued:
            totals[t.currency] = totals.get(t.currency, Decimal("0")) + t.outstanding
        totals.update(self.obligations)
        return totals



# Graph models

@dataclass
class ScanMeta:
    pages_scanned: int = 0
    tx_scanned: int = 0
    complete: bool = False
    processed: bool = False
    error: Optional[str] = None


@dataclass
class AccountNode:

    address: str
    level: int

    account_info: Optional[AccountInfo] = None
    activation: Optional[Activation] = None
    activation_complete: bool = False
    activation_source: str = "pending"

    outgoing: List[LedgerTx] = field(default_factory=list)
    scan: ScanMeta = field(default_factory=ScanMeta)


@dataclass(frozen=True)
class Edge:

    from_address: str
    to_address: str

    kind: EdgeKind
    tx_type: str
    amount: Amount

    ledger_index: int
    timestamp: Optional[dt.datetime]
    tx_hash: str


@dataclass
class GraphStats:
    processed_accounts: int = 0
    total_pages: int = 0
    total_scanned: int = 0
    failed_accounts: int = 0


@dataclass
class Graph:
    """
    Capped flow graph. Nodes are unique by address; edges are append-only in
    discovery order; the adjacency indexes are updated with every edge.
    A cap of 0 means unlimited.
    """

    seeds: List[str] = field(default_factory=list)
    params: Optional[TraceParams] = None
    max_accounts: int = 0
    max_edges: int = 0

    nodes: Dict[str, AccountNode] = field(default_factory=dict)
    stats: GraphStats = field(default_factory=GraphStats)
    built_at: Optional[dt.datetime] = None
    cancelled: bool = False
    truncated_by: List[str] = field(default_factory=list)

    _edges: List[Edge] = field(default_factory=list, repr=False)
    _out_index: Dict[str, List[int]] = field(default_factory=dict, repr=False)
    _in_index: Dict[str, List[int]] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        if self.params is not None:
            self.max_accounts = self.max_accounts or self.params.max_accounts
            self.max_edges = self.max_edges or self.params.max_edges

    # --- sizes ---

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    @property
    def edges(self) -> Tuple[Edge, ...]:
        return tuple(self._edges)

    def iter_edges(self) -> Iterator[Edge]:
        return iter(self._edges)

    def nodes_full(self) -> bool:
        return bool(self.max_accounts) and len(self.nodes) >= self.max_accounts

    def edges_full(self) -> bool:
        return bool(self.max_edges) and len(self._edges) >= self.max_edges

    # --- mutation ---

    def ensure_node(self, address: str, level: int) -> Optional[AccountNode]:
        """
        Returns the node for address, creating it at level when there is
        room. An existing node keeps the smaller of its level and level.
        """
        node = self.nodes.get(address)
        if node is not None:
            if level < node.level:
                node.level = level
            return node
        if self.nodes_full():
            return None
        node = AccountNode(address=address, level=level)
        self.nodes[address] = node
        return node

    def add_edge(self, edge: Edge) -> bool:
        if edge.from_address not in self.nodes or edge.to_address not in self.nodes:
            raise GraphInvariantError(
                f"Edge {edge.tx_hash or '?'} references a missing node "
                f"({edge.from_address} -> {edge.to_address})"
            )
        if self.edges_full():
            return False
        idx = len(self._edges)
        self._edges.append(edge)
        self._out_index.setdefault(edge.from_address, []).append(idx)
        self._in_index.setdefault(edge.to_address, []).append(idx)
        return True

    def mark_truncated(self, reason: str) -> None:
        if reason not in self.truncated_by:
            self.truncated_by.append(reason)

    # --- reads ---

    def has_node(self, address: str) -> bool:
        return address in self.nodes

    def outgoing_edges(self, address: str) -> List[Edge]:
        return [self._edges[i] for i in self._out_index.get(address, [])]

    def incoming_edges(self, address: str) -> List[Edge]:
        return [self._edges[i] for i in self._in_index.get(address, [])]

    def out_neighbors(self, address: str) -> List[str]:
        # distinct, in discovery order
        seen: Dict[str, None] = {}
        for i in self._out_index.get(address, []):
            seen.setdefault(self._edges[i].to_address, None)
        return list(seen)

    def in_neighbors(self, address: str) -> List[str]:
        seen: Dict[str, None] = {}
        for i in self._in_index.get(address, []):
            seen.setdefault(self._edges[i].from_address, None)
        return list(seen)

    def incomplete_nodes(self) -> List[str]:
        return [a for a, n in self.nodes.items() if n.scan.processed and not n.scan.complete]

    def is_partial(self) -> bool:
        return self.cancelled or bool(self.truncated_by) or bool(self.incomplete_nodes())



# Progress / inspection

@dataclass(frozen=True)
class ProgressStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    active: int = 0
    retried: int = 0
    cancelled: int = 0

    @property
    def percent(self) -> int:
        return round(self.completed * 100 / self.total) if self.total > 0 else 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self.pending,
            "active": self.active,
            "retried": self.retried,
            "cancelled": self.cancelled,
        }


@dataclass
class InspectionResult:
    address: str
    account_info: Optional[AccountInfo]
    token_summary: Optional[TokenSummary]
    outgoing: List[LedgerTx]
    scan: ScanMeta



# Analysis models

@dataclass(frozen=True)
class Cycle:
    path: Tuple[str, ...]       # start .. last, the closing edge returns to path[0]

    @property
    def length(self) -> int:
        return len(self.path)

    @property
    def canonical(self) -> str:
        return "→".join(self.path)


@dataclass
class CycleReport:
    cycles: List[Cycle] = field(default_factory=list)
    starts: List[str] = field(default_factory=list)
    truncated: bool = False


@dataclass
class Finding:
    kind: FindingKind
    severity: Severity
    score: int
    subjects: List[str]
    description: str
    reasons: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    caveats: List[str] = field(default_factory=list)


@dataclass
class PatternReport:
    findings: List[Finding] = field(default_factory=list)
    cycles: CycleReport = field(default_factory=CycleReport)
    sampled_incomplete: bool = False
    caveats: List[str] = field(default_factory=list)
    generated_at: Optional[dt.datetime] = None

    def summary(self) -> Dict[str, Any]:
        by_kind: Dict[str, int] = {}
        for f in self.findings:
            by_kind[f.kind.value] = by_kind.get(f.kind.value, 0) + 1
        return {
            "total": len(self.findings),
            "high": sum(1 for f in self.findings if f.severity == Severity.HIGH),
            "medium": sum(1 for f in self.findings if f.severity == Severity.MEDIUM),
            "low": sum(1 for f in self.findings if f.severity == Severity.LOW),
            "by_kind": by_kind,
        }

    def of_kind(self, kind: FindingKind) -> List[Finding]:
        return [f for f in self.findings if f.kind == kind]
