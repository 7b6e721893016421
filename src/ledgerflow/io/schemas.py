from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from ledgerflow.core.amounts import Amount, dec_to_str, to_decimal
from ledgerflow.core.dto import AccountInfo
from ledgerflow.core.enums import EdgeKind
from ledgerflow.core.models import (
    Activation,
    Constraints,
    Edge,
    Graph,
    GraphStats,
    InspectionResult,
    PatternReport,
    ScanMeta,
    TraceParams,
)
from ledgerflow.core.timeutil import parse_iso_datetime, to_iso, utc_now


FORMAT_VERSION = 1


def _dec(x: Optional[Decimal]) -> Optional[str]:
    return dec_to_str(x) if x is not None else None


def amount_to_dict(a: Amount) -> Dict[str, Any]:
    return {"value": dec_to_str(a.value), "currency": a.currency, "issuer": a.issuer}


def constraints_to_dict(c: Constraints) -> Dict[str, Any]:
    return {
        "ledger_min": c.ledger_min,
        "ledger_max": c.ledger_max,
        "start_date": to_iso(c.start_date),
        "end_date": to_iso(c.end_date),
        "min_xrp": _dec(c.min_xrp),
    }


def params_to_dict(p: TraceParams) -> Dict[str, Any]:
    return {
        "max_depth": p.max_depth,
        "per_node": p.per_node,
        "max_accounts": p.max_accounts,
        "max_edges": p.max_edges,
        "page_limit": p.page_limit,
        "max_pages_per_node": p.max_pages_per_node,
        "max_tx_scan_per_node": p.max_tx_scan_per_node,
        "max_total_pages": p.max_total_pages,
        "max_total_tx_scan": p.max_total_tx_scan,
        "constraints": constraints_to_dict(p.constraints),
    }


def _account_info_to_dict(info: Optional[AccountInfo]) -> Optional[Dict[str, Any]]:
    if info is None:
        return None
    return {
        "balance_xrp": dec_to_str(info.balance_xrp),
        "sequence": info.sequence,
        "owner_count": info.owner_count,
        "flags": info.flags,
        "domain": info.domain,
    }


def _activation_to_dict(act: Optional[Activation]) -> Optional[Dict[str, Any]]:
    if act is None:
        return None
    return {
        "activator": act.activator,
        "tx_hash": act.tx_hash,
        "ledger_index": act.ledger_index,
        "timestamp": to_iso(act.timestamp),
    }


def graph_to_dict(g: Graph) -> Dict[str, Any]:
    """
    Stable JSON-shaped export. Decimals are strings, datetimes ISO-8601 UTC,
    nodes and edges in discovery order.
    """
    return {
        "format_version": FORMAT_VERSION,
        "seeds": list(g.seeds),
        "params": params_to_dict(g.params) if g.params else None,
        "built_at": to_iso(g.built_at),
        "exported_at": to_iso(utc_now()),
        "stats": {
            "processed_accounts": g.stats.processed_accounts,
            "total_pages": g.stats.total_pages,
            "total_scanned": g.stats.total_scanned,
            "failed_accounts": g.stats.failed_accounts,
        },
        "cancelled": g.cancelled,
        "truncated_by": list(g.truncated_by),
        "nodes": [
            {
                "address": n.address,
                "level": n.level,
                "account_info": _account_info_to_dict(n.account_info),
                "activation": _activation_to_dict(n.activation),
                "activation_complete": n.activation_complete,
                "activation_source": n.activation_source,
                "scan": {
                    "pages_scanned": n.scan.pages_scanned,
                    "tx_scanned": n.scan.tx_scanned,
                    "complete": n.scan.complete,
                    "processed": n.scan.processed,
                    "error": n.scan.error,
                },
            }
            for n in g.nodes.values()
        ],
        "edges": [
            {
                "from": e.from_address,
                "to": e.to_address,
                "kind": e.kind.value,
                "tx_type": e.tx_type,
                "amount": amount_to_dict(e.amount),
                "ledger_index": e.ledger_index,
                "timestamp": to_iso(e.timestamp),
                "tx_hash": e.tx_hash,
            }
            for e in g.iter_edges()
        ],
    }


export_graph = graph_to_dict


def _params_from_dict(d: Optional[Dict[str, Any]]) -> Optional[TraceParams]:
    if not d:
        return None
    c = d.get("constraints") or {}
    return TraceParams(
        max_depth=d.get("max_depth", 0),
        per_node=d.get("per_node", 0),
        max_accounts=d.get("max_accounts", 0),
        max_edges=d.get("max_edges", 0),
        page_limit=d.get("page_limit", 0),
        max_pages_per_node=d.get("max_pages_per_node") or TraceParams.max_pages_per_node,
        max_tx_scan_per_node=d.get("max_tx_scan_per_node") or TraceParams.max_tx_scan_per_node,
        max_total_pages=d.get("max_total_pages") or 0,
        max_total_tx_scan=d.get("max_total_tx_scan") or 0,
        constraints=Constraints(
            ledger_min=c.get("ledger_min"),
            ledger_max=c.get("ledger_max"),
            start_date=parse_iso_datetime(c.get("start_date")),
            end_date=parse_iso_datetime(c.get("end_date")),
            min_xrp=to_decimal(c.get("min_xrp")),
        ),
    )


def graph_from_dict(d: Dict[str, Any]) -> Graph:
    """
    Re-loads an export for offline analysis. Edges are replayed in their
    exported order, so adjacency and discovery order match the exported graph.
    """
    version = d.get("format_version")
    if version not in (None, FORMAT_VERSION):
        raise ValueError(f"Unsupported graph format version: {version}")

    params = _params_from_dict(d.get("params"))
    nodes: List[Dict[str, Any]] = d.get("nodes") or []
    edges: List[Dict[str, Any]] = d.get("edges") or []
    # size caps to the data; a re-loaded graph is never trimmed
    g = Graph(
        seeds=list(d.get("seeds") or []),
        params=params,
        max_accounts=len(nodes) or 1,
        max_edges=len(edges) or 1,
    )
    g.built_at = parse_iso_datetime(d.get("built_at"))
    g.cancelled = bool(d.get("cancelled"))
    g.truncated_by = list(d.get("truncated_by") or [])
    st = d.get("stats") or {}
    g.stats = GraphStats(
        processed_accounts=int(st.get("processed_accounts") or 0),
        total_pages=int(st.get("total_pages") or 0),
        total_scanned=int(st.get("total_scanned") or 0),
        failed_accounts=int(st.get("failed_accounts") or 0),
    )

    for n in nodes:
        node = g.ensure_node(n["address"], int(n.get("level") or 0))
        info = n.get("account_info")
        if info:
            node.account_info = AccountInfo(
                address=node.address,
                balance_xrp=to_decimal(info.get("balance_xrp")) or Decimal("0"),
                sequence=info.get("sequence"),
                owner_count=info.get("owner_count"),
                flags=info.get("flags"),
                domain=info.get("domain") or "",
            )
        act = n.get("activation")
        if act:
            node.activation = Activation(
                activator=act.get("activator") or "",
                tx_hash=act.get("tx_hash") or "",
                ledger_index=int(act.get("ledger_index") or 0),
                timestamp=parse_iso_datetime(act.get("timestamp")),
            )
        node.activation_complete = bool(n.get("activation_complete"))
        node.activation_source = n.get("activation_source") or "pending"
        scan = n.get("scan") or {}
        node.scan = ScanMeta(
            pages_scanned=int(scan.get("pages_scanned") or 0),
            tx_scanned=int(scan.get("tx_scanned") or 0),
            complete=bool(scan.get("complete")),
            processed=bool(scan.get("processed")),
            error=scan.get("error"),
        )

    for e in edges:
        amt = e.get("amount") or {}
        g.add_edge(
            Edge(
                from_address=e["from"],
                to_address=e["to"],
                kind=EdgeKind(e.get("kind") or EdgeKind.OTHER.value),
                tx_type=e.get("tx_type") or "",
                amount=Amount(
                    to_decimal(amt.get("value")) or Decimal("0"),
                    amt.get("currency") or "XRP",
                    amt.get("issuer"),
                ),
                ledger_index=int(e.get("ledger_index") or 0),
                timestamp=parse_iso_datetime(e.get("timestamp")),
                tx_hash=e.get("tx_hash") or "",
            )
        )
    return g


def findings_to_dict(report: PatternReport) -> Dict[str, Any]:
    return {
        "generated_at": to_iso(report.generated_at),
        "summary": report.summary(),
        "sampled_incomplete": report.sampled_incomplete,
        "caveats": list(report.caveats),
        "cycles": {
            "starts": list(report.cycles.starts),
            "truncated": report.cycles.truncated,
            "paths": [list(c.path) for c in report.cycles.cycles],
        },
        "findings": [
            {
                "kind": f.kind.value,
                "severity": f.severity.value,
                "score": f.score,
                "subjects": list(f.subjects),
                "description": f.description,
                "reasons": list(f.reasons),
                "metrics": f.metrics,
                "caveats": list(f.caveats),
            }
            for f in report.findings
        ],
    }


def inspection_to_dict(r: InspectionResult) -> Dict[str, Any]:
    tokens = r.token_summary
    return {
        "address": r.address,
        "account_info": _account_info_to_dict(r.account_info),
        "tokens": None if tokens is None else {
            "trustline_count": tokens.trustline_count,
            "lines_complete": tokens.lines_complete,
            "holdings": [
                {"currency": h.currency, "issuer": h.issuer, "balance": dec_to_str(h.balance)}
                for h in tokens.top_trustlines
            ],
            "outstanding": {k: dec_to_str(v) for k, v in tokens.outstanding_by_currency().items()},
        },
        "outgoing": [
            {
                "tx_hash": tx.tx_hash,
                "ledger_index": tx.ledger_index,
                "timestamp": to_iso(tx.timestamp),
                "tx_type": tx.tx_type,
                "destination": tx.destination,
            }
            for tx in r.outgoing
        ],
        "scan": {
            "pages_scanned": r.scan.pages_scanned,
            "tx_scanned": r.scan.tx_scanned,
            "complete": r.scan.complete,
            "error": r.scan.error,
        },
    }
