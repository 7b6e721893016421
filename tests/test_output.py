import csv
import json
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path

from ledgerflow.adapters.ledger.static_ledger_adapter import StaticLedgerAdapter
from ledgerflow.analysis.paths import find_path
from ledgerflow.analysis.patterns import detect_patterns
from ledgerflow.core.models import Constraints, TraceParams
from ledgerflow.io.output_writer import (
    EDGE_CSV_FIELDS,
    read_graph_json,
    write_edges_csv,
    write_findings_json,
    write_graph_json,
    write_summary_md,
)
from ledgerflow.io.schemas import FORMAT_VERSION, export_graph, graph_from_dict
from ledgerflow.services.graph_builder import build_graph


def _payment(tx_hash, ledger, src, dst, amount="1000000"):
    return {
        "tx": {
            "hash": tx_hash,
            "ledger_index": ledger,
            "TransactionType": "Payment",
            "Account": src,
            "Destination": dst,
            "Amount": amount,
            "date": 760000000,
        },
        "meta": {},
    }


TXS = [
    _payment("P1", 10, "rSEED", "rA", "1500000"),
    _payment("P2", 11, "rSEED", "rB", {"currency": "USD", "issuer": "rGATE", "value": "3.25"}),
    _payment("P3", 12, "rA", "rSEED"),
    _payment("P4", 13, "rA", "rC"),
]


class ExportTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        params = TraceParams(max_depth=2, per_node=10, constraints=Constraints.from_values(start_date="2020-01-01"))
        self.graph = await build_graph(StaticLedgerAdapter(transactions=list(TXS)), ["rSEED"], params)

    def test_export_shape(self) -> None:
        data = export_graph(self.graph)

        self.assertEqual(data["format_version"], FORMAT_VERSION)
        for key in ("seeds", "params", "built_at", "exported_at", "stats",
                    "cancelled", "truncated_by", "nodes", "edges"):
            self.assertIn(key, data)
        self.assertEqual(data["seeds"], ["rSEED"])
        self.assertEqual(data["params"]["constraints"]["start_date"], "2020-01-01T00:00:00Z")
        self.assertEqual([e["tx_hash"] for e in data["edges"]], ["P1", "P2", "P3", "P4"])
        self.assertEqual(data["edges"][0]["amount"], {"value": "1.5", "currency": "XRP", "issuer": None})
        self.assertEqual(data["edges"][1]["amount"]["value"], "3.25")
        self.assertTrue(data["built_at"].endswith("Z"))
        json.dumps(data)

    def test_reload_keeps_order_and_adjacency(self) -> None:
        data = json.loads(json.dumps(export_graph(self.graph)))
        g = graph_from_dict(data)

        self.assertEqual(list(g.nodes), list(self.graph.nodes))
        self.assertEqual([e.tx_hash for e in g.edges], [e.tx_hash for e in self.graph.edges])
        self.assertEqual(g.edges[1].amount.value, Decimal("3.25"))
        self.assertEqual(g.nodes["rA"].level, 1)
        self.assertEqual(g.out_neighbors("rA"), ["rSEED", "rC"])
        self.assertEqual(find_path(g, "rSEED", "rC"), ["rSEED", "rA", "rC"])
        self.assertEqual(g.params.per_node, 10)

    def test_reload_rejects_unknown_version(self) -> None:
        with self.assertRaises(ValueError):
            graph_from_dict({"format_version": 99})

    def test_writers(self) -> None:
        report = detect_patterns(self.graph)
        with tempfile.TemporaryDirectory() as tmp:
            graph_path = write_graph_json(self.graph, tmp)
            findings_path = write_findings_json(report, tmp)
            csv_path = write_edges_csv(self.graph, tmp)
            md_path = write_summary_md(self.graph, tmp, report=report)

            reloaded = read_graph_json(graph_path)
            self.assertEqual(reloaded.edge_count, 4)

            findings = json.loads(Path(findings_path).read_text(encoding="utf-8"))
            self.assertEqual(findings["summary"]["total"], len(report.findings))
            self.assertIn("caveats", findings)

            with open(csv_path, encoding="utf-8", newline="") as f:
                rows = list(csv.DictReader(f))
            self.assertEqual(list(rows[0].keys()), EDGE_CSV_FIELDS)
            self.assertEqual(rows[1]["currency"], "USD")
            self.assertEqual(rows[1]["issuer"], "rGATE")

            md = Path(md_path).read_text(encoding="utf-8")
            self.assertIn("# Flow Graph Summary", md)
            self.assertIn("rSEED", md)
            self.assertIn("1.500000 XRP", md)


if __name__ == "__main__":
    unittest.main()
