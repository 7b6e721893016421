from __future__ import annotations

from typing import List, Set, Tuple

from ledgerflow.config import settings
from ledgerflow.core.models import Cycle, CycleReport, Graph


def canonical_rotation(path: List[str]) -> Tuple[str, ...]:
    """Lexicographically smallest rotation, so one cycle has one key."""
    n = len(path)
    best = tuple(path)
    for i in range(1, n):
        rot = tuple(path[i:] + path[:i])
        if rot < best:
            best = rot
    return best


def cycle_starts(graph: Graph, top_k: int = settings.CYCLE_TOP_K) -> List[str]:
    starts: List[str] = [s for s in graph.seeds if s in graph.nodes]
    ranked = sorted(
        graph.nodes,
        key=lambda a: (-len(graph.out_neighbors(a)), a),
    )
    for addr in ranked[:max(0, top_k)]:
        if addr not in starts:
            starts.append(addr)
    return starts


def detect_cycles(
    graph: Graph,
    max_depth: int = settings.CYCLE_MAX_DEPTH,
    top_k: int = settings.CYCLE_TOP_K,
    max_cycles: int = settings.CYCLE_MAX_CYCLES,
) -> CycleReport:
    """
    Bounded simple-cycle search (2..max_depth edges) from the seeds and the
    top_k nodes by distinct out-degree. Iterative DFS with an explicit
    stack; results are deduplicated by canonical rotation and capped at
    max_cycles.
    """
    report = CycleReport(starts=cycle_starts(graph, top_k))
    seen: Set[Tuple[str, ...]] = set()

    for start in report.starts:
        # frame: (node, path to node, next neighbour index)
        stack: List[Tuple[str, List[str], int]] = [(start, [start], 0)]
        while stack:
            node, path, idx = stack.pop()
            neighbors = graph.out_neighbors(node)
            if idx >= len(neighbors):
                continue
            stack.append((node, path, idx + 1))
            nxt = neighbors[idx]

            if nxt == start:
                if len(path) >= 2:
                    key = canonical_rotation(path)
                    if key not in seen:
                        seen.add(key)
                        report.cycles.append(Cycle(path=key))
                        if len(report.cycles) >= max_cycles:
                            report.truncated = True
                            return report
                continue

            if nxt in path or len(path) >= max_depth:
                continue
            stack.append((nxt, path + [nxt], 0))

    return report
