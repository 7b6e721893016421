from __future__ import annotations

from collections import deque
from typing import Deque, Dict, List, Optional

from ledgerflow.core.models import Edge, Graph


def find_path(graph: Graph, src: str, dst: str) -> Optional[List[str]]:
    """
    Shortest hop path src -> dst following edge direction. Neighbours are
    expanded in edge discovery order, so ties resolve the same way on
    every run.
    """
    if src not in graph.nodes or dst not in graph.nodes:
        return None
    if src == dst:
        return [src]

    prev: Dict[str, str] = {src: ""}
    q: Deque[str] = deque([src])
    while q:
        cur = q.popleft()
        for nxt in graph.out_neighbors(cur):
            if nxt in prev:
                continue
            prev[nxt] = cur
            if nxt == dst:
                return _unwind(prev, dst)
            q.append(nxt)
    return None


def _unwind(prev: Dict[str, str], dst: str) -> List[str]:
    path = [dst]
    while prev[path[-1]]:
        path.append(prev[path[-1]])
    path.reverse()
    return path


def find_path_edges(graph: Graph, src: str, dst: str) -> Optional[List[Edge]]:
    # first discovered edge for each hop
    path = find_path(graph, src, dst)
    if path is None:
        return None
    edges: List[Edge] = []
    for a, b in zip(path, path[1:]):
        for e in graph.outgoing_edges(a):
            if e.to_address == b:
                edges.append(e)
                break
    return edges
