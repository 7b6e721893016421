from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from ledgerflow.analysis.cycles import detect_cycles
from ledgerflow.config import settings
from ledgerflow.core.amounts import dec_to_str, short_addr
from ledgerflow.core.enums import EdgeKind, FindingKind, Severity
from ledgerflow.core.models import CycleReport, Edge, Finding, Graph, PatternReport
from ledgerflow.core.timeutil import utc_now


@dataclass(frozen=True)
class PatternThresholds:
    fan_degree: int = settings.FAN_DEGREE_THRESHOLD
    hub_min_parents: int = settings.HUB_MIN_PARENTS
    hub_max_children: int = settings.HUB_MAX_CHILDREN
    hub_min_in_edges: int = settings.HUB_MIN_IN_EDGES
    hub_min_out_edges: int = settings.HUB_MIN_OUT_EDGES
    burst_window: int = settings.BURST_LEDGER_WINDOW
    burst_min_count: int = settings.BURST_MIN_COUNT
    ping_pong_min_repeats: int = settings.PING_PONG_MIN_REPEATS
    concentration_share: Decimal = settings.CONCENTRATION_SHARE
    concentration_min_payments: int = settings.CONCENTRATION_MIN_PAYMENTS
    rapid_repeat_seconds: int = settings.RAPID_REPEAT_SECONDS
    sandwich_window: int = settings.SANDWICH_LEDGER_WINDOW
    dex_wash_min_offers: int = settings.DEX_WASH_MIN_OFFERS
    multi_kind_min_kinds: int = settings.MULTI_KIND_MIN_KINDS
    multi_kind_min_transfers: int = settings.MULTI_KIND_MIN_TRANSFERS
    token_distribution_min_payments: int = settings.TOKEN_DISTRIBUTION_MIN_PAYMENTS
    cycle_max_depth: int = settings.CYCLE_MAX_DEPTH
    cycle_top_k: int = settings.CYCLE_TOP_K
    cycle_max_cycles: int = settings.CYCLE_MAX_CYCLES


@dataclass(frozen=True)
class DegreeProfile:
    address: str
    out_degree: int     # distinct counterparties
    in_degree: int
    out_edges: int      # raw edge counts
    in_edges: int


def _score(n: float) -> int:
    return max(0, min(100, int(round(n))))


def _finding(kind: FindingKind, score: int, subjects: List[str], description: str, **kw) -> Finding:
    return Finding(
        kind=kind,
        severity=Severity.from_score(score),
        score=score,
        subjects=subjects,
        description=description,
        **kw,
    )


def _incomplete_caveat(graph: Graph, address: str) -> List[str]:
    node = graph.nodes.get(address)
    if node is not None and node.scan.processed and not node.scan.complete:
        return [f"history of {short_addr(address)} was sampled, counts are a lower bound"]
    if node is not None and not node.scan.processed:
        return [f"{short_addr(address)} was not crawled, only edges into it are known"]
    return []


# -------------------------
# Degrees
# -------------------------

def degree_profile(graph: Graph) -> Dict[str, DegreeProfile]:
    return {
        addr: DegreeProfile(
            address=addr,
            out_degree=len(graph.out_neighbors(addr)),
            in_degree=len(graph.in_neighbors(addr)),
            out_edges=len(graph.outgoing_edges(addr)),
            in_edges=len(graph.incoming_edges(addr)),
        )
        for addr in graph.nodes
    }


def detect_fan_out(graph: Graph, threshold: int = settings.FAN_DEGREE_THRESHOLD) -> List[Finding]:
    findings: List[Finding] = []
    for p in degree_profile(graph).values():
        if p.out_degree < threshold:
            continue
        score = _score(40 + 3 * (p.out_degree - threshold))
        findings.append(_finding(
            FindingKind.FAN_OUT, score, [p.address],
            f"{short_addr(p.address)} sent to {p.out_degree} distinct accounts",
            reasons=[f"{p.out_degree} distinct recipients (threshold {threshold})"],
            metrics={"out_degree": p.out_degree, "out_edges": p.out_edges},
            caveats=_incomplete_caveat(graph, p.address),
        ))
    return findings


def detect_fan_in(graph: Graph, threshold: int = settings.FAN_DEGREE_THRESHOLD) -> List[Finding]:
    findings: List[Finding] = []
    for p in degree_profile(graph).values():
        if p.in_degree < threshold:
            continue
        score = _score(40 + 3 * (p.in_degree - threshold))
        findings.append(_finding(
            FindingKind.FAN_IN, score, [p.address],
            f"{short_addr(p.address)} received from {p.in_degree} distinct accounts",
            reasons=[f"{p.in_degree} distinct senders (threshold {threshold})"],
            metrics={"in_degree": p.in_degree, "in_edges": p.in_edges},
            # incoming edges only exist from crawled senders
            caveats=["incoming edges are limited to crawled senders"],
        ))
    return findings


def detect_hubs(graph: Graph, thresholds: Optional[PatternThresholds] = None) -> List[Finding]:
    """
    Classic hub: many distinct parents funnelling into few children, with
    enough volume on both sides to not be a one-off.
    """
    t = thresholds or PatternThresholds()
    findings: List[Finding] = []
    for p in degree_profile(graph).values():
        if p.in_degree < t.hub_min_parents or p.out_degree > t.hub_max_children:
            continue
        if p.in_edges < t.hub_min_in_edges or p.out_edges < t.hub_min_out_edges:
            continue
        score = _score(50 + 4 * (p.in_degree - t.hub_min_parents) + 2 * (p.out_edges - t.hub_min_out_edges))
        findings.append(_finding(
            FindingKind.CLASSIC_HUB, score, [p.address],
            f"{short_addr(p.address)} collects from {p.in_degree} accounts and forwards to {p.out_degree}",
            reasons=[
                f"{p.in_degree} distinct parents, {p.out_degree} distinct children",
                f"{p.in_edges} incoming and {p.out_edges} outgoing transfers",
            ],
            metrics={
                "in_degree": p.in_degree,
                "out_degree": p.out_degree,
                "in_edges": p.in_edges,
                "out_edges": p.out_edges,
            },
            caveats=_incomplete_caveat(graph, p.address),
        ))
    return findings


# -------------------------
# Timing
# -------------------------

def _max_window(ledgers: List[int], window: int) -> Tuple[int, int, int]:
    # (count, first ledger, last ledger) of the densest window
    best = (0, 0, 0)
    lo = 0
    for hi, led in enumerate(ledgers):
        while led - ledgers[lo] > window:
            lo += 1
        count = hi - lo + 1
        if count > best[0]:
            best = (count, ledgers[lo], led)
    return best


def detect_bursts(
    graph: Graph,
    window: int = settings.BURST_LEDGER_WINDOW,
    min_count: int = settings.BURST_MIN_COUNT,
) -> List[Finding]:
    """
    Densest window of outgoing edges per node. Only transfers that became
    edges are counted: sent transactions without an extractable
    counterparty (AccountSet and the like) never enter the window.
    """
    findings: List[Finding] = []
    for addr in graph.nodes:
        edges = graph.outgoing_edges(addr)
        ledgers = sorted(e.ledger_index for e in edges if e.ledger_index > 0)
        if len(ledgers) < min_count:
            continue
        count, first, last = _max_window(ledgers, window)
        if count < min_count:
            continue
        caveats = _incomplete_caveat(graph, addr)
        skipped = len(graph.nodes[addr].outgoing) - len(edges)
        if skipped > 0:
            caveats.append(f"{skipped} outgoing transactions without a counterparty edge are not counted")
        score = _score(40 + 3 * (count - min_count))
        findings.append(_finding(
            FindingKind.BURST, score, [addr],
            f"{count} outgoing transfers from {short_addr(addr)} within {last - first} ledgers",
            reasons=[f"{count} transfers in a {window}-ledger window ({first}..{last})"],
            metrics={"count": count, "first_ledger": first, "last_ledger": last, "window": window},
            caveats=caveats,
        ))
    return findings


def detect_rapid_repeats(graph: Graph, seconds: int = settings.RAPID_REPEAT_SECONDS) -> List[Finding]:
    """
    Consecutive Payments from one account to the same destination less
    than `seconds` apart. Edges without a timestamp are ignored.
    """
    findings: List[Finding] = []
    for addr in graph.nodes:
        payments = sorted(
            (e for e in graph.outgoing_edges(addr) if e.kind == EdgeKind.PAYMENT and e.timestamp is not None),
            key=lambda e: e.timestamp,
        )
        hits: Dict[str, List[Tuple[Edge, Edge]]] = {}
        for prev, cur in zip(payments, payments[1:]):
            gap = (cur.timestamp - prev.timestamp).total_seconds()
            if gap < seconds and cur.to_address == prev.to_address:
                hits.setdefault(cur.to_address, []).append((prev, cur))

        for dest, pairs in hits.items():
            gaps = [(b.timestamp - a.timestamp).total_seconds() for a, b in pairs]
            score = _score(40 + 5 * (len(pairs) - 1))
            findings.append(_finding(
                FindingKind.RAPID_REPEAT, score, [addr, dest],
                f"{short_addr(addr)} paid {short_addr(dest)} {len(pairs) + 1} times in quick succession",
                reasons=[f"{len(pairs)} consecutive payments under {seconds}s apart"],
                metrics={
                    "pairs": len(pairs),
                    "min_gap_seconds": int(min(gaps)),
                    "tx_hashes": [a.tx_hash for a, _ in pairs[:1]] + [b.tx_hash for _, b in pairs],
                },
                caveats=_incomplete_caveat(graph, addr),
            ))
    return findings


# -------------------------
# DEX and multi-asset activity
# -------------------------

def detect_dex_sandwiches(graph: Graph, window: int = settings.SANDWICH_LEDGER_WINDOW) -> List[Finding]:
    """
    Three OfferCreate edges in ledger order, at most `window` ledgers from
    first to last, where one account places the outer two and a different
    account the middle one.
    """
    offers = sorted(
        (e for e in graph.iter_edges() if e.kind == EdgeKind.OFFER_CREATE and e.ledger_index > 0),
        key=lambda e: e.ledger_index,
    )
    findings: List[Finding] = []
    for front, victim, back in zip(offers, offers[1:], offers[2:]):
        span = back.ledger_index - front.ledger_index
        if span > window:
            continue
        if front.from_address != back.from_address or victim.from_address == front.from_address:
            continue
        attacker = front.from_address
        score = _score(70 + 2 * (window - span))
        findings.append(_finding(
            FindingKind.DEX_SANDWICH, score, [attacker, victim.from_address],
            f"{short_addr(attacker)} placed offers around {short_addr(victim.from_address)}'s offer",
            reasons=[f"offers in ledgers {front.ledger_index}, {victim.ledger_index}, {back.ledger_index}"],
            metrics={
                "attacker": attacker,
                "victim": victim.from_address,
                "span_ledgers": span,
                "tx_hashes": [front.tx_hash, victim.tx_hash, back.tx_hash],
            },
            caveats=["only offers placed by crawled accounts are visible"],
        ))
    return findings


def detect_dex_wash_trading(graph: Graph, min_offers: int = settings.DEX_WASH_MIN_OFFERS) -> List[Finding]:
    findings: List[Finding] = []
    for addr in graph.nodes:
        offers = [e for e in graph.outgoing_edges(addr) if e.kind == EdgeKind.OFFER_CREATE]
        if len(offers) < min_offers:
            continue
        books = {e.to_address for e in offers}
        score = _score(40 + 3 * (len(offers) - min_offers))
        findings.append(_finding(
            FindingKind.DEX_WASH_TRADING, score, [addr],
            f"{short_addr(addr)} placed {len(offers)} offers",
            reasons=[f"{len(offers)} OfferCreate transactions (threshold {min_offers})"],
            metrics={"offers": len(offers), "issuers": len(books)},
            caveats=_incomplete_caveat(graph, addr),
        ))
    return findings


def detect_multi_kind_activity(
    graph: Graph,
    min_kinds: int = settings.MULTI_KIND_MIN_KINDS,
    min_transfers: int = settings.MULTI_KIND_MIN_TRANSFERS,
) -> List[Finding]:
    """
    Accounts busy across several edge kinds at once (payments, trust lines,
    offers, other), with enough volume to matter.
    """
    findings: List[Finding] = []
    for addr in graph.nodes:
        counts: Dict[str, int] = {}
        for e in graph.outgoing_edges(addr):
            counts[e.kind.value] = counts.get(e.kind.value, 0) + 1
        total = sum(counts.values())
        if len(counts) < min_kinds or total < min_transfers:
            continue
        score = _score(40 + 10 * (len(counts) - min_kinds) + min(20, total - min_transfers))
        findings.append(_finding(
            FindingKind.MULTI_KIND_ACTIVITY, score, [addr],
            f"{short_addr(addr)} active in {len(counts)} transaction kinds",
            reasons=[f"{total} outgoing transfers across " + ", ".join(sorted(counts))],
            metrics={"kinds": counts, "total": total},
            caveats=_incomplete_caveat(graph, addr),
        ))
    return findings


def detect_token_distribution(
    graph: Graph,
    min_payments: int = settings.TOKEN_DISTRIBUTION_MIN_PAYMENTS,
) -> List[Finding]:
    """
    Per issuer and currency: how much of its own token it paid out and to
    whom. The score grows with the share taken by the largest recipient.
    """
    findings: List[Finding] = []
    for addr in graph.nodes:
        by_currency: Dict[str, List[Edge]] = {}
        for e in graph.outgoing_edges(addr):
            if e.kind == EdgeKind.PAYMENT and not e.amount.is_xrp and e.amount.issuer == addr:
                by_currency.setdefault(e.amount.currency, []).append(e)
        trustlines = sum(1 for e in graph.incoming_edges(addr) if e.kind == EdgeKind.TRUST_SET)

        for currency, payments in by_currency.items():
            if len(payments) < min_payments:
                continue
            total = sum((e.amount.value for e in payments), Decimal("0"))
            recipients: Dict[str, Decimal] = {}
            for e in payments:
                recipients[e.to_address] = recipients.get(e.to_address, Decimal("0")) + e.amount.value
            top, top_value = max(recipients.items(), key=lambda kv: (kv[1], kv[0]))
            share = top_value / total if total > 0 else Decimal("0")
            score = _score(20 + 50 * float(share))
            findings.append(_finding(
                FindingKind.TOKEN_DISTRIBUTION, score, [addr, top],
                f"{short_addr(addr)} distributed {dec_to_str(total)} {currency} to {len(recipients)} accounts",
                reasons=[f"largest recipient {short_addr(top)} got {share:.0%}"],
                metrics={
                    "currency": currency,
                    "total_issued": dec_to_str(total),
                    "recipients": {k: dec_to_str(v) for k, v in recipients.items()},
                    "payments": len(payments),
                    "trustlines_seen": trustlines,
                },
                caveats=_incomplete_caveat(graph, addr),
            ))
    return findings


# -------------------------
# Pairs
# -------------------------

def detect_ping_pong(graph: Graph, min_repeats: int = settings.PING_PONG_MIN_REPEATS) -> List[Finding]:
    """
    Per unordered pair: transfers each way and the most repeated identical
    amount. Flagged when both directions exist or one amount repeats at
    least min_repeats times. The score is a bounded heuristic; reasons list
    what contributed.
    """
    pairs: Dict[Tuple[str, str], List[Edge]] = {}
    for e in graph.iter_edges():
        key = tuple(sorted((e.from_address, e.to_address)))
        pairs.setdefault(key, []).append(e)

    findings: List[Finding] = []
    for (a, b), edges in pairs.items():
        forward = sum(1 for e in edges if e.from_address == a)
        backward = len(edges) - forward
        bidirectional = forward > 0 and backward > 0
        reciprocal = len(edges) if bidirectional else 0

        amounts: Dict[Tuple, int] = {}
        for e in edges:
            if e.kind != EdgeKind.PAYMENT or e.amount.value <= 0:
                continue
            amounts[e.amount.key()] = amounts.get(e.amount.key(), 0) + 1
        max_repeat = max(amounts.values()) if amounts else 0
        repeated = max_repeat >= min_repeats

        if not bidirectional and not repeated:
            continue

        score = 0
        reasons: List[str] = []
        if bidirectional:
            score += 40 + min(30, 5 * (reciprocal - 2))
            reasons.append(f"transfers in both directions ({forward} and {backward})")
        if repeated:
            score += 20 + min(10, 2 * (max_repeat - min_repeats))
            reasons.append(f"identical amount repeated {max_repeat} times")
        ledgers = {e.ledger_index for e in edges if e.ledger_index > 0}
        if bidirectional and len(ledgers) <= 2:
            score += 10
            reasons.append("round trip settled within two ledgers")

        score = _score(score)
        findings.append(_finding(
            FindingKind.PING_PONG, score, [a, b],
            f"{short_addr(a)} ⇄ {short_addr(b)}: {len(edges)} transfers",
            reasons=reasons,
            metrics={
                "forward": forward,
                "backward": backward,
                "reciprocal": reciprocal,
                "max_repeated_amount": max_repeat,
                "ledgers": len(ledgers),
            },
            caveats=_incomplete_caveat(graph, a) + _incomplete_caveat(graph, b),
        ))
    return findings


def detect_concentration(
    graph: Graph,
    share: Decimal = settings.CONCENTRATION_SHARE,
    min_payments: int = settings.CONCENTRATION_MIN_PAYMENTS,
) -> List[Finding]:
    """
    Drain heuristic: most of an account's outgoing XRP went to one place.
    """
    findings: List[Finding] = []
    for addr in graph.nodes:
        payments = [
            e for e in graph.outgoing_edges(addr)
            if e.kind == EdgeKind.PAYMENT and e.amount.is_xrp and e.amount.value > 0
        ]
        if len(payments) < min_payments:
            continue
        total = sum((e.amount.value for e in payments), Decimal("0"))
        by_dest: Dict[str, Decimal] = {}
        for e in payments:
            by_dest[e.to_address] = by_dest.get(e.to_address, Decimal("0")) + e.amount.value
        top, top_value = max(by_dest.items(), key=lambda kv: (kv[1], kv[0]))
        ratio = top_value / total
        if ratio <= share:
            continue

        score = _score(40 + 40 * float((ratio - share) / (1 - share))) if share < 1 else 40
        findings.append(_finding(
            FindingKind.CONCENTRATION, score, [addr, top],
            f"{short_addr(addr)} sent {ratio:.0%} of its outgoing XRP to {short_addr(top)}",
            reasons=[
                f"{dec_to_str(top_value)} of {dec_to_str(total)} XRP to one destination",
                f"{len(payments)} outgoing XRP payments",
            ],
            metrics={
                "destination": top,
                "share": dec_to_str(ratio.quantize(Decimal("0.0001"))),
                "total_xrp": dec_to_str(total),
                "payments": len(payments),
            },
            caveats=_incomplete_caveat(graph, addr),
        ))
    return findings


# -------------------------
# Cycles + report
# -------------------------

def cycle_findings(graph: Graph, report: CycleReport) -> List[Finding]:
    findings: List[Finding] = []
    for c in report.cycles:
        xrp = Decimal("0")
        hops = list(zip(c.path, c.path[1:] + c.path[:1]))
        for a, b in hops:
            for e in graph.outgoing_edges(a):
                if e.to_address == b:
                    if e.amount.is_xrp:
                        xrp += e.amount.value
                    break
        score = _score(45 + 5 * c.length)
        findings.append(_finding(
            FindingKind.CIRCULAR_FLOW, score, list(c.path),
            f"circular flow through {c.length} accounts",
            reasons=[c.canonical + "→" + c.path[0]],
            metrics={"length": c.length, "xrp_on_path": dec_to_str(xrp)},
        ))
    return findings


def _report_caveats(graph: Graph, cycles: CycleReport) -> List[str]:
    caveats: List[str] = []
    if graph.cancelled:
        caveats.append("crawl was cancelled before finishing")
    if graph.truncated_by:
        caveats.append("crawl stopped at caps: " + ", ".join(graph.truncated_by))
    incomplete = graph.incomplete_nodes()
    if incomplete:
        caveats.append(f"{len(incomplete)} account histories were sampled, not exhausted")
    if cycles.truncated:
        caveats.append(f"cycle search stopped after {len(cycles.cycles)} cycles")
    return caveats


def detect_patterns(graph: Graph, thresholds: Optional[PatternThresholds] = None) -> PatternReport:
    t = thresholds or PatternThresholds()
    cycles = detect_cycles(graph, t.cycle_max_depth, t.cycle_top_k, t.cycle_max_cycles)

    findings: List[Finding] = []
    findings.extend(cycle_findings(graph, cycles))
    findings.extend(detect_fan_out(graph, t.fan_degree))
    findings.extend(detect_fan_in(graph, t.fan_degree))
    findings.extend(detect_hubs(graph, t))
    findings.extend(detect_bursts(graph, t.burst_window, t.burst_min_count))
    findings.extend(detect_ping_pong(graph, t.ping_pong_min_repeats))
    findings.extend(detect_concentration(graph, t.concentration_share, t.concentration_min_payments))
    findings.extend(detect_rapid_repeats(graph, t.rapid_repeat_seconds))
    findings.extend(detect_dex_sandwiches(graph, t.sandwich_window))
    findings.extend(detect_dex_wash_trading(graph, t.dex_wash_min_offers))
    findings.extend(detect_multi_kind_activity(graph, t.multi_kind_min_kinds, t.multi_kind_min_transfers))
    findings.extend(detect_token_distribution(graph, t.token_distribution_min_payments))

    # stable sort keeps detector order among equal scores
    findings.sort(key=lambda f: -f.score)

    return PatternReport(
        findings=findings,
        cycles=cycles,
        sampled_incomplete=graph.is_partial(),
        caveats=_report_caveats(graph, cycles),
        generated_at=utc_now(),
    )
