import datetime as dt
import unittest
from decimal import Decimal

from ledgerflow.analysis.cycles import canonical_rotation, detect_cycles
from ledgerflow.analysis.paths import find_path, find_path_edges
from ledgerflow.analysis.patterns import (
    PatternThresholds,
    degree_profile,
    detect_bursts,
    detect_concentration,
    detect_dex_sandwiches,
    detect_dex_wash_trading,
    detect_fan_in,
    detect_fan_out,
    detect_hubs,
    detect_multi_kind_activity,
    detect_patterns,
    detect_ping_pong,
    detect_rapid_repeats,
    detect_token_distribution,
)
from ledgerflow.core.amounts import Amount
from ledgerflow.core.enums import EdgeKind, FindingKind, Severity
from ledgerflow.core.models import Edge, Graph
from ledgerflow.core.normalize import normalize_tx_entry


def _graph(rows, seeds=None) -> Graph:
    """rows: (from, to) or (from, to, ledger) or (from, to, ledger, xrp)"""
    g = Graph(seeds=list(seeds or []))
    for i, row in enumerate(rows):
        src, dst = row[0], row[1]
        ledger = row[2] if len(row) > 2 else 100 + i
        xrp = Decimal(str(row[3])) if len(row) > 3 else Decimal("1")
        g.ensure_node(src, 0)
        g.ensure_node(dst, 1)
        g.add_edge(Edge(
            from_address=src,
            to_address=dst,
            kind=EdgeKind.PAYMENT,
            tx_type="Payment",
            amount=Amount(xrp),
            ledger_index=ledger,
            timestamp=None,
            tx_hash=f"H{i}",
        ))
    for n in g.nodes.values():
        n.scan.processed = True
        n.scan.complete = True
    return g


def _all_simple_paths(g: Graph, src: str, dst: str):
    out = []
    stack = [(src, [src])]
    while stack:
        node, path = stack.pop()
        if node == dst:
            out.append(path)
            continue
        for nxt in g.out_neighbors(node):
            if nxt not in path:
                stack.append((nxt, path + [nxt]))
    return out


class PathTests(unittest.TestCase):
    def setUp(self) -> None:
        self.g = _graph([
            ("rA", "rB"), ("rB", "rC"), ("rC", "rD"),
            ("rA", "rE"), ("rE", "rD"), ("rD", "rF"), ("rX", "rA"),
        ], seeds=["rA"])

    def test_shortest_path_matches_exhaustive_search(self) -> None:
        for src in self.g.nodes:
            for dst in self.g.nodes:
                path = find_path(self.g, src, dst)
                candidates = _all_simple_paths(self.g, src, dst)
                if not candidates:
                    self.assertIsNone(path, (src, dst))
                    continue
                self.assertIsNotNone(path, (src, dst))
                self.assertEqual(len(path), min(len(c) for c in candidates))
                for a, b in zip(path, path[1:]):
                    self.assertIn(b, self.g.out_neighbors(a))

    def test_same_node_and_missing_nodes(self) -> None:
        self.assertEqual(find_path(self.g, "rA", "rA"), ["rA"])
        self.assertIsNone(find_path(self.g, "rA", "rNOPE"))
        self.assertIsNone(find_path(self.g, "rNOPE", "rA"))

    def test_direction_is_respected(self) -> None:
        self.assertEqual(find_path(self.g, "rA", "rD"), ["rA", "rE", "rD"])
        self.assertIsNone(find_path(self.g, "rD", "rA"))

    def test_path_edges(self) -> None:
        edges = find_path_edges(self.g, "rX", "rF")
        self.assertEqual([(e.from_address, e.to_address) for e in edges],
                         [("rX", "rA"), ("rA", "rE"), ("rE", "rD"), ("rD", "rF")])


class CycleTests(unittest.TestCase):
    def test_canonical_rotation(self) -> None:
        self.assertEqual(canonical_rotation(["rC", "rA", "rB"]), ("rA", "rB", "rC"))
        self.assertEqual(canonical_rotation(["rB", "rA"]), ("rA", "rB"))

    def test_finds_each_cycle_once(self) -> None:
        g = _graph([
            ("rA", "rB"), ("rB", "rC"), ("rC", "rA"),
            ("rA", "rD"), ("rD", "rA"),
            ("rC", "rE"),
        ], seeds=["rB"])

        report = detect_cycles(g)
        keys = [c.path for c in report.cycles]

        self.assertEqual(len(keys), len(set(keys)))
        self.assertEqual(set(keys), {("rA", "rB", "rC"), ("rA", "rD")})
        self.assertFalse(report.truncated)
        for c in report.cycles:
            self.assertGreaterEqual(c.length, 2)
            hops = list(zip(c.path, c.path[1:] + c.path[:1]))
            for a, b in hops:
                self.assertIn(b, g.out_neighbors(a))
        self.assertEqual(report.starts[0], "rB")

    def test_depth_limit_and_cycle_cap(self) -> None:
        g = _graph([
            ("rA", "rB"), ("rB", "rC"), ("rC", "rA"),
            ("rA", "rD"), ("rD", "rA"),
        ], seeds=["rA"])

        shallow = detect_cycles(g, max_depth=2)
        self.assertEqual([c.path for c in shallow.cycles], [("rA", "rD")])

        capped = detect_cycles(g, max_cycles=1)
        self.assertEqual(len(capped.cycles), 1)
        self.assertTrue(capped.truncated)

    def test_acyclic_graph(self) -> None:
        g = _graph([("rA", "rB"), ("rB", "rC")], seeds=["rA"])
        self.assertEqual(detect_cycles(g).cycles, [])


class PatternTests(unittest.TestCase):
    def test_degree_profile_counts_distinct_and_raw(self) -> None:
        g = _graph([("rA", "rB"), ("rA", "rB"), ("rA", "rC"), ("rD", "rA")])
        p = degree_profile(g)["rA"]
        self.assertEqual((p.out_degree, p.in_degree, p.out_edges, p.in_edges), (2, 1, 3, 1))

    def test_fan_out_threshold(self) -> None:
        g = _graph([("rHUB", f"rT{i}") for i in range(10)])
        findings = detect_fan_out(g, threshold=10)
        self.assertEqual([f.subjects for f in findings], [["rHUB"]])
        self.assertEqual(findings[0].kind, FindingKind.FAN_OUT)

        g9 = _graph([("rHUB", f"rT{i}") for i in range(9)])
        self.assertEqual(detect_fan_out(g9, threshold=10), [])

    def test_fan_in_threshold(self) -> None:
        g = _graph([(f"rS{i}", "rSINK") for i in range(12)])
        findings = detect_fan_in(g, threshold=10)
        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].metrics["in_degree"], 12)

    def test_classic_hub(self) -> None:
        rows = []
        for p in ("rP1", "rP2", "rP3"):
            rows += [(p, "rHUB"), (p, "rHUB")]
        rows += [("rHUB", "rOUT")] * 5
        g = _graph(rows)

        findings = detect_hubs(g)

        self.assertEqual([f.subjects for f in findings], [["rHUB"]])
        self.assertEqual(findings[0].metrics["in_edges"], 6)

        # too many children
        rows2 = rows + [("rHUB", "rO2"), ("rHUB", "rO3")]
        self.assertEqual(detect_hubs(_graph(rows2)), [])

    def test_burst_inside_window(self) -> None:
        g = _graph([("rBOT", f"rT{i}", 1000 + i * 3) for i in range(10)])
        findings = detect_bursts(g, window=50, min_count=10)
        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].metrics["count"], 10)

        spread = _graph([("rBOT", f"rT{i}", 1000 + i * 100) for i in range(10)])
        self.assertEqual(detect_bursts(spread, window=50, min_count=10), [])

    def test_burst_on_sampled_node_carries_caveat(self) -> None:
        g = _graph([("rBOT", f"rT{i}", 1000 + i) for i in range(12)])
        g.nodes["rBOT"].scan.complete = False
        findings = detect_bursts(g, window=50, min_count=10)
        self.assertTrue(findings[0].caveats)

    def test_repeated_amount_one_way(self) -> None:
        g = _graph([("rA", "rB", 10, 25), ("rA", "rB", 20, 25), ("rA", "rB", 30, 25)])
        findings = detect_ping_pong(g)
        self.assertEqual(len(findings), 1)
        f = findings[0]
        self.assertEqual(f.metrics["reciprocal"], 0)
        self.assertEqual(f.metrics["max_repeated_amount"], 3)
        self.assertTrue(any("repeated" in r for r in f.reasons))

    def test_single_transfer_is_not_ping_pong(self) -> None:
        g = _graph([("rA", "rB", 10, 5), ("rA", "rB", 11, 6)])
        self.assertEqual(detect_ping_pong(g), [])

    def test_ping_pong_score_is_bounded(self) -> None:
        rows = []
        for i in range(40):
            rows.append(("rA", "rB", 10 + i, 7))
            rows.append(("rB", "rA", 10 + i, 7))
        f = detect_ping_pong(_graph(rows))[0]
        self.assertLessEqual(f.score, 100)
        self.assertEqual(f.severity, Severity.HIGH)

    def test_concentration(self) -> None:
        g = _graph([("rA", "rB", 10, 10), ("rA", "rB", 11, 10), ("rA", "rC", 12, 1)])
        findings = detect_concentration(g)
        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].subjects, ["rA", "rB"])

        even = _graph([("rA", "rB", 10, 5), ("rA", "rC", 11, 5), ("rA", "rD", 12, 5)])
        self.assertEqual(detect_concentration(even), [])

    def test_detect_patterns_on_partial_graph(self) -> None:
        g = _graph([("rA", "rB"), ("rB", "rA"), ("rB", "rC")], seeds=["rA"])
        g.cancelled = True
        g.mark_truncated("max_edges")
        g.nodes["rC"].scan.complete = False

        report = detect_patterns(g, PatternThresholds(fan_degree=2))

        self.assertTrue(report.sampled_incomplete)
        self.assertEqual(len(report.caveats), 3)
        kinds = {f.kind for f in report.findings}
        self.assertIn(FindingKind.CIRCULAR_FLOW, kinds)
        self.assertIn(FindingKind.PING_PONG, kinds)
        self.assertIn(FindingKind.FAN_OUT, kinds)
        summary = report.summary()
        self.assertEqual(summary["total"], len(report.findings))
        self.assertEqual(summary["high"] + summary["medium"] + summary["low"], summary["total"])
        scores = [f.score for f in report.findings]
        self.assertEqual(scores, sorted(scores, reverse=True))

    def test_empty_graph(self) -> None:
        report = detect_patterns(Graph())
        self.assertEqual(report.findings, [])
        self.assertFalse(report.sampled_incomplete)

    def test_burst_notes_transactions_without_edges(self) -> None:
        g = _graph([("rBOT", f"rT{i}", 1000 + i) for i in range(10)])
        g.nodes["rBOT"].outgoing = [
            normalize_tx_entry({"tx": {"hash": f"S{i}", "ledger_index": 1000 + i,
                                       "TransactionType": "AccountSet", "Account": "rBOT"}})
            for i in range(13)
        ]
        f = detect_bursts(g, window=50, min_count=10)[0]
        self.assertTrue(any("3 outgoing transactions" in c for c in f.caveats))


T0 = dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone.utc)


def _edges_graph(rows) -> Graph:
    """rows: (from, to, kind, ledger, amount, seconds after T0 or None)"""
    g = Graph()
    for i, (src, dst, kind, ledger, amount, secs) in enumerate(rows):
        g.ensure_node(src, 0)
        g.ensure_node(dst, 1)
        g.add_edge(Edge(
            from_address=src,
            to_address=dst,
            kind=kind,
            tx_type=kind.value,
            amount=amount,
            ledger_index=ledger,
            timestamp=None if secs is None else T0 + dt.timedelta(seconds=secs),
            tx_hash=f"E{i}",
        ))
    for n in g.nodes.values():
        n.scan.processed = True
        n.scan.complete = True
    return g


def _xrp(v) -> Amount:
    return Amount(Decimal(str(v)))


def _usd(v, issuer) -> Amount:
    return Amount(Decimal(str(v)), "USD", issuer)


PAY = EdgeKind.PAYMENT
OFFER = EdgeKind.OFFER_CREATE
TRUST = EdgeKind.TRUST_SET


class DexAndTokenPatternTests(unittest.TestCase):
    def test_rapid_repeats_to_same_destination(self) -> None:
        g = _edges_graph([
            ("rA", "rB", PAY, 10, _xrp(5), 0),
            ("rA", "rB", PAY, 11, _xrp(5), 4),
            ("rA", "rB", PAY, 12, _xrp(5), 8),
            ("rA", "rC", PAY, 13, _xrp(5), 100),
            ("rA", "rC", PAY, 14, _xrp(5), 200),
            ("rA", "rD", PAY, 15, _xrp(5), None),
        ])

        findings = detect_rapid_repeats(g, seconds=10)

        self.assertEqual(len(findings), 1)
        f = findings[0]
        self.assertEqual(f.kind, FindingKind.RAPID_REPEAT)
        self.assertEqual(f.subjects, ["rA", "rB"])
        self.assertEqual(f.metrics["pairs"], 2)
        self.assertEqual(f.metrics["min_gap_seconds"], 4)
        self.assertEqual(f.metrics["tx_hashes"], ["E0", "E1", "E2"])

    def test_sandwich_needs_same_outer_account_inside_window(self) -> None:
        g = _edges_graph([
            ("rBOT", "rGATE", OFFER, 100, _usd(1, "rGATE"), None),
            ("rVIC", "rGATE", OFFER, 102, _usd(1, "rGATE"), None),
            ("rBOT", "rGATE", OFFER, 104, _usd(1, "rGATE"), None),
        ])
        findings = detect_dex_sandwiches(g, window=5)
        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].subjects, ["rBOT", "rVIC"])
        self.assertEqual(findings[0].severity, Severity.HIGH)
        self.assertEqual(findings[0].metrics["span_ledgers"], 4)

        wide = _edges_graph([
            ("rBOT", "rGATE", OFFER, 100, _usd(1, "rGATE"), None),
            ("rVIC", "rGATE", OFFER, 102, _usd(1, "rGATE"), None),
            ("rBOT", "rGATE", OFFER, 110, _usd(1, "rGATE"), None),
        ])
        self.assertEqual(detect_dex_sandwiches(wide, window=5), [])

        same = _edges_graph([
            ("rBOT", "rGATE", OFFER, 100, _usd(1, "rGATE"), None),
            ("rBOT", "rGATE", OFFER, 101, _usd(1, "rGATE"), None),
            ("rBOT", "rGATE", OFFER, 102, _usd(1, "rGATE"), None),
        ])
        self.assertEqual(detect_dex_sandwiches(same, window=5), [])

    def test_dex_wash_trading_offer_count(self) -> None:
        def offers(n):
            return _edges_graph([("rMM", "rGATE", OFFER, 100 + i, _usd(1, "rGATE"), None) for i in range(n)])

        self.assertEqual(detect_dex_wash_trading(offers(5), min_offers=6), [])
        medium = detect_dex_wash_trading(offers(6), min_offers=6)
        self.assertEqual(medium[0].severity, Severity.MEDIUM)
        self.assertEqual(medium[0].metrics["offers"], 6)
        high = detect_dex_wash_trading(offers(16), min_offers=6)
        self.assertEqual(high[0].severity, Severity.HIGH)

    def test_multi_kind_activity(self) -> None:
        rows = [("rX", f"rP{i}", PAY, 100 + i, _xrp(1), None) for i in range(10)]
        rows += [("rX", f"rG{i}", TRUST, 200 + i, _usd(0, f"rG{i}"), None) for i in range(3)]
        rows += [("rX", "rGATE", OFFER, 300 + i, _usd(1, "rGATE"), None) for i in range(2)]

        findings = detect_multi_kind_activity(_edges_graph(rows), min_kinds=3, min_transfers=15)

        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].metrics["kinds"], {"Payment": 10, "TrustSet": 3, "OfferCreate": 2})
        self.assertEqual(findings[0].metrics["total"], 15)

        two_kinds = _edges_graph(rows[:10] + [("rX", "rGATE", OFFER, 400 + i, _usd(1, "rGATE"), None)
                                              for i in range(5)])
        self.assertEqual(detect_multi_kind_activity(two_kinds, min_kinds=3, min_transfers=15), [])

    def test_token_distribution_per_currency(self) -> None:
        g = _edges_graph([
            ("rH1", "rISS", TRUST, 5, _usd(0, "rISS"), None),
            ("rISS", "rH1", PAY, 10, _usd(100, "rISS"), None),
            ("rISS", "rH2", PAY, 11, _usd(10, "rISS"), None),
            ("rISS", "rH1", PAY, 12, _usd(50, "rISS"), None),
            # someone else's token does not count as distribution
            ("rISS", "rH2", PAY, 13, _usd(999, "rOTHER"), None),
        ])

        findings = detect_token_distribution(g, min_payments=3)

        self.assertEqual(len(findings), 1)
        f = findings[0]
        self.assertEqual(f.kind, FindingKind.TOKEN_DISTRIBUTION)
        self.assertEqual(f.subjects, ["rISS", "rH1"])
        self.assertEqual(f.metrics["total_issued"], "160")
        self.assertEqual(f.metrics["recipients"], {"rH1": "150", "rH2": "10"})
        self.assertEqual(f.metrics["trustlines_seen"], 1)
        self.assertEqual(f.score, 67)

    def test_detect_patterns_runs_dex_detectors(self) -> None:
        g = _edges_graph([
            ("rBOT", "rGATE", OFFER, 100, _usd(1, "rGATE"), None),
            ("rVIC", "rGATE", OFFER, 101, _usd(1, "rGATE"), None),
            ("rBOT", "rGATE", OFFER, 102, _usd(1, "rGATE"), None),
        ])
        kinds = {f.kind for f in detect_patterns(g).findings}
        self.assertIn(FindingKind.DEX_SANDWICH, kinds)


if __name__ == "__main__":
    unittest.main()
