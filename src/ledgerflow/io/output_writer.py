from __future__ import annotations

import csv
import json
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from ledgerflow.core.amounts import dec_to_str, format_amount, short_addr
from ledgerflow.core.models import Graph, PatternReport
from ledgerflow.core.timeutil import to_iso
from ledgerflow.io.schemas import findings_to_dict, graph_from_dict, graph_to_dict


EDGE_CSV_FIELDS = [
    "from",
    "to",
    "kind",
    "tx_type",
    "value",
    "currency",
    "issuer",
    "ledger_index",
    "timestamp",
    "tx_hash",
]


def _out_path(out_dir: str, filename: str) -> Path:
    p = Path(out_dir)
    p.mkdir(parents=True, exist_ok=True)
    return p / filename


def write_graph_json(graph: Graph, out_dir: str, filename: str = "graph.json") -> str:
    out_path = _out_path(out_dir, filename)
    with out_path.open("w", encoding="utf-8") as f:
        json.dump(graph_to_dict(graph), f, indent=2, ensure_ascii=False)
    return str(out_path)


def read_graph_json(path: str) -> Graph:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return graph_from_dict(data)


def write_findings_json(report: PatternReport, out_dir: str, filename: str = "findings.json") -> str:
    out_path = _out_path(out_dir, filename)
    with out_path.open("w", encoding="utf-8") as f:
        json.dump(findings_to_dict(report), f, indent=2, ensure_ascii=False)
    return str(out_path)


def write_edges_csv(graph: Graph, out_dir: str, filename: str = "edges.csv") -> str:
    out_path = _out_path(out_dir, filename)
    with out_path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=EDGE_CSV_FIELDS)
        writer.writeheader()
        for e in graph.iter_edges():
            writer.writerow({
                "from": e.from_address,
                "to": e.to_address,
                "kind": e.kind.value,
                "tx_type": e.tx_type,
                "value": dec_to_str(e.amount.value),
                "currency": e.amount.currency,
                "issuer": e.amount.issuer or "",
                "ledger_index": e.ledger_index,
                "timestamp": to_iso(e.timestamp) or "",
                "tx_hash": e.tx_hash,
            })
    return str(out_path)


def write_summary_md(
    graph: Graph,
    out_dir: str,
    report: Optional[PatternReport] = None,
    filename: str = "summary.md",
) -> str:
    """
    Short crawl summary: sizes, caps hit, top XRP counterparties of the
    seeds and the strongest findings.
    """
    out_path = _out_path(out_dir, filename)
    seeds = set(graph.seeds)

    def sum_xrp_by(edges, key) -> Dict[str, Decimal]:
        totals: Dict[str, Decimal] = {}
        for e in edges:
            if not e.amount.is_xrp:
                continue
            addr = key(e)
            totals[addr] = totals.get(addr, Decimal("0")) + e.amount.value
        return totals

    outflow = sum_xrp_by([e for e in graph.iter_edges() if e.from_address in seeds], lambda e: e.to_address)
    inflow = sum_xrp_by([e for e in graph.iter_edges() if e.to_address in seeds], lambda e: e.from_address)

    def top_n(totals, n=10):
        return sorted(totals.items(), key=lambda x: (-x[1], x[0]))[:n]

    lines: List[str] = []
    lines.append("# Flow Graph Summary\n")
    lines.append(f"- Seeds: **{', '.join(graph.seeds)}**\n")
    lines.append(f"- Nodes: **{graph.node_count}**\n")
    lines.append(f"- Edges: **{graph.edge_count}**\n")
    lines.append(f"- Accounts crawled: **{graph.stats.processed_accounts}** "
                 f"({graph.stats.failed_accounts} incomplete by error)\n")
    lines.append(f"- Pages / transactions scanned: **{graph.stats.total_pages}** / "
                 f"**{graph.stats.total_scanned}**\n")
    if graph.built_at:
        lines.append(f"- Built at: {to_iso(graph.built_at)}\n")
    lines.append("\n")

    if graph.is_partial():
        lines.append("## Partial result\n\n")
        if graph.cancelled:
            lines.append("- The crawl was cancelled before it finished.\n")
        for reason in graph.truncated_by:
            lines.append(f"- Cap reached: `{reason}`\n")
        incomplete = graph.incomplete_nodes()
        if incomplete:
            lines.append(f"- {len(incomplete)} account histories were sampled, not exhausted.\n")
        lines.append("\n")

    lines.append("## Top XRP Destinations from Seeds\n\n")
    if not outflow:
        lines.append("_No outgoing XRP payments from the seeds._\n\n")
    else:
        for addr, xrp in top_n(outflow):
            lines.append(f"- **{xrp:.6f} XRP** | {addr}\n")
        lines.append("\n")

    lines.append("## Top XRP Sources into Seeds\n\n")
    if not inflow:
        lines.append("_No crawled account paid the seeds._\n\n")
    else:
        for addr, xrp in top_n(inflow):
            lines.append(f"- **{xrp:.6f} XRP** | {addr}\n")
        lines.append("\n")

    if report is not None:
        summary = report.summary()
        lines.append("## Findings\n\n")
        lines.append(f"- Total: **{summary['total']}** "
                     f"(high {summary['high']}, medium {summary['medium']}, low {summary['low']})\n")
        for f in report.findings[:15]:
            subjects = " ⇄ ".join(short_addr(s) for s in f.subjects[:4])
            lines.append(f"- [{f.severity.value} {f.score}] {f.kind.value}: {f.description} ({subjects})\n")
        for c in report.caveats:
            lines.append(f"- _Caveat: {c}_\n")
        lines.append("\n")

    lines.append("## First Edges\n\n")
    if not graph.edge_count:
        lines.append("_No edges._\n")
    else:
        for e in graph.edges[:15]:
            lines.append(
                f"- {e.kind.value} | {format_amount(e.amount)} "
                f"| {short_addr(e.from_address)} -> {short_addr(e.to_address)} "
                f"| ledger {e.ledger_index} | tx: {e.tx_hash}\n"
            )

    with out_path.open("w", encoding="utf-8") as f:
        f.writelines(lines)

    return str(out_path)
