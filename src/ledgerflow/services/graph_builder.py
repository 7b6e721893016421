from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from ledgerflow.config import settings
from ledgerflow.core.amounts import ZERO_XRP, is_valid_address
from ledgerflow.core.dto import LedgerTx
from ledgerflow.core.errors import PROPAGATED_ERRORS, InvalidAddressError, ScanCancelledError
from ledgerflow.core.models import (
    AccountNode,
    Constraints,
    Edge,
    Graph,
    InspectionResult,
    ScanMeta,
    TraceParams,
)
from ledgerflow.core.normalize import (
    AddressValidator,
    extract_counterparty,
    normalize_entries,
    sort_txs_asc,
    transaction_amount,
    within_constraints,
)
from ledgerflow.core.timeutil import utc_now
from ledgerflow.ports.ledger_gateway_port import LedgerGatewayPort
from ledgerflow.services.address_cache import AddressCacheService
from ledgerflow.services.request_scheduler import RequestScheduler

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, Dict[str, Any]], None]


@dataclass(frozen=True)
class _hopItem:
    address: str
    depth: int


@dataclass
class OutgoingScan:
    txs: List[LedgerTx] = field(default_factory=list)
    pages: int = 0
    scanned: int = 0
    complete: bool = False
    stopped_by: Optional[str] = None
    error: Optional[str] = None


@dataclass
class _Budget:
    # crawl-wide page/scan counters; 0 = unlimited
    max_pages: int = 0
    max_scanned: int = 0
    pages: int = 0
    scanned: int = 0

    def exhausted_by(self) -> Optional[str]:
        if self.max_pages and self.pages >= self.max_pages:
            return "max_total_pages"
        if self.max_scanned and self.scanned >= self.max_scanned:
            return "max_total_tx_scan"
        return None


def _default_validator(addr: str) -> bool:
    return is_valid_address(addr, strict=settings.STRICT_ADDRESS_CHECK)


class FlowGraphBuilder:
    """
    Breadth-first crawl from one or more seeds into a capped flow graph.

    - Per node: account info, activation and the outgoing scan run
      concurrently through the shared RequestScheduler.
    - Edges: one per kept outgoing transaction (address -> counterparty),
      in ascending ledger order per node. Not deduplicated.
    - Stops on cancellation, max_accounts, max_edges or a crawl-wide
      page/scan cap; what was built so far is returned.
    """

    def __init__(
        self,
        gateway: LedgerGatewayPort,
        caches: Optional[AddressCacheService] = None,
        scheduler: Optional[RequestScheduler] = None,
        address_validator: Optional[AddressValidator] = None,
    ) -> None:
        self.gateway = gateway
        self.caches = caches or AddressCacheService(gateway)
        self.scheduler = scheduler or RequestScheduler()
        self._validate = address_validator or _default_validator

    def cancel(self, reason: str = "cancelled by user") -> None:
        self.scheduler.cancel(reason)

    # -------------------------
    # Crawl
    # -------------------------

    async def build(
        self,
        seeds: Iterable[str],
        params: Optional[TraceParams] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Graph:
        params = params or TraceParams()
        emit = self._emitter(on_progress)

        valid = self._valid_seeds(seeds)
        if self.scheduler.cancelled:
            self.scheduler.reset()
        token = self.scheduler.token

        graph = Graph(seeds=valid, params=params)
        q: Deque[_hopItem] = deque()
        for s in valid:
            if graph.ensure_node(s, 0) is None:
                graph.mark_truncated("max_accounts")
                continue
            q.append(_hopItem(s, 0))

        budget = _Budget(max_pages=params.max_total_pages, max_scanned=params.max_total_tx_scan)
        listener = self.scheduler.subscribe(lambda st: emit("requests", st.as_dict()))
        emit("start", {"seeds": list(valid), "max_depth": params.max_depth})
        logger.info("crawl start seeds=%s depth=%d per_node=%d", valid, params.max_depth, params.per_node)

        try:
            while q:
                if token.cancelled:
                    self._mark_cancelled(graph, emit)
                    break
                if graph.nodes_full():
                    self._cap(graph, "max_accounts", emit)
                    break
                if graph.edges_full():
                    self._cap(graph, "max_edges", emit)
                    break
                reason = budget.exhausted_by()
                if reason:
                    self._cap(graph, reason, emit)
                    break

                item = q.popleft()
                node = graph.nodes.get(item.address)
                if node is None or node.scan.processed:
                    continue
                depth = min(item.depth, node.level)
                if depth >= params.max_depth:
                    continue

                emit("visit", {
                    "address": node.address,
                    "depth": depth,
                    "nodes": graph.node_count,
                    "edges": graph.edge_count,
                    "queued": len(q),
                })

                try:
                    ok = await self._process_node(graph, node, depth, params, budget, q, emit)
                except ScanCancelledError:
                    ok = False
                if not ok:
                    self._mark_cancelled(graph, emit)
                    break
        finally:
            self.scheduler.unsubscribe(listener)

        graph.built_at = utc_now()
        logger.info(
            "crawl done nodes=%d edges=%d truncated_by=%s cancelled=%s",
            graph.node_count, graph.edge_count, graph.truncated_by, graph.cancelled,
        )
        emit("done", {
            "nodes": graph.node_count,
            "edges": graph.edge_count,
            "truncated_by": list(graph.truncated_by),
            "cancelled": graph.cancelled,
        })
        return graph

    async def _process_node(
        self,
        graph: Graph,
        node: AccountNode,
        depth: int,
        params: TraceParams,
        budget: _Budget,
        q: Deque[_hopItem],
        emit: ProgressCallback,
    ) -> bool:
        """
        Fetches one node and adds its edges. Returns False when the crawl
        was cancelled while the node was in flight; its results are dropped.
        """
        address = node.address
        results = await asyncio.gather(
            self.caches.get_account_info(address, self.scheduler, params.max_retries),
            self.caches.get_activation(address, self.scheduler, params.max_retries),
            self.collect_outgoing(address, params, budget),
            return_exceptions=True,
        )
        for r in results:
            if isinstance(r, ScanCancelledError):
                return False
        for r in results:
            if isinstance(r, BaseException):
                raise r
        if self.scheduler.cancelled:
            return False

        info_entry, act_entry, scan = results

        node.account_info = info_entry.value
        node.activation = act_entry.value
        node.activation_complete = act_entry.complete
        node.activation_source = act_entry.source
        node.outgoing = scan.txs

        error = scan.error
        if error is None and info_entry.source == "error":
            error = "account_info unavailable"
        node.scan = ScanMeta(
            pages_scanned=scan.pages,
            tx_scanned=scan.scanned,
            complete=scan.complete and error is None,
            processed=True,
            error=error,
        )

        graph.stats.processed_accounts += 1
        graph.stats.total_pages += scan.pages
        graph.stats.total_scanned += scan.scanned
        if error:
            graph.stats.failed_accounts += 1
            logger.warning("node %s incomplete: %s", address, error)
            emit("node_failed", {"address": address, "error": error})

        self._add_edges(graph, node, depth, scan.txs, q, emit)
        return True

    def _add_edges(
        self,
        graph: Graph,
        node: AccountNode,
        depth: int,
        txs: List[LedgerTx],
        q: Deque[_hopItem],
        emit: ProgressCallback,
    ) -> None:
        for tx in txs:
            if graph.edges_full():
                self._cap(graph, "max_edges", emit)
                return

            cp = extract_counterparty(tx, self._validate)
            if cp is None:
                continue
            to_addr, kind = cp

            if graph.has_node(to_addr):
                graph.ensure_node(to_addr, depth + 1)
            else:
                if graph.ensure_node(to_addr, depth + 1) is None:
                    # no room for the endpoint, so no edge either
                    self._cap(graph, "max_accounts", emit)
                    continue
                q.append(_hopItem(to_addr, depth + 1))

            graph.add_edge(
                Edge(
                    from_address=node.address,
                    to_address=to_addr,
                    kind=kind,
                    tx_type=tx.tx_type,
                    amount=transaction_amount(tx) or ZERO_XRP,
                    ledger_index=tx.ledger_index,
                    timestamp=tx.timestamp,
                    tx_hash=tx.tx_hash,
                )
            )

    # -------------------------
    # Outgoing scan
    # -------------------------

    async def collect_outgoing(
        self,
        address: str,
        params: TraceParams,
        budget: Optional[_Budget] = None,
    ) -> OutgoingScan:
        """
        Newest-first pages of address's history, keeping transactions it sent
        that pass the crawl constraints. complete is True only when the
        history was exhausted. A failed page fetch (after the scheduler's
        retries) ends the scan with error set instead of raising.
        """
        c = params.constraints
        out = OutgoingScan()
        cursor = None

        while True:
            if len(out.txs) >= params.per_node:
                out.stopped_by = "per_node"
                break
            if out.pages >= params.max_pages_per_node:
                out.stopped_by = "max_pages_per_node"
                break
            if out.scanned >= params.max_tx_scan_per_node:
                out.stopped_by = "max_tx_scan_per_node"
                break
            if budget is not None and budget.exhausted_by():
                out.stopped_by = budget.exhausted_by()
                break

            try:
                page = await self.scheduler.enqueue(
                    lambda cur=cursor: self.gateway.paged_transactions(
                        address,
                        cursor=cur,
                        forward=False,
                        ledger_min=c.ledger_min,
                        ledger_max=c.ledger_max,
                        limit=params.page_limit,
                    ),
                    priority=settings.PRIORITY_TRANSACTIONS,
                    max_retries=params.max_retries,
                )
            except PROPAGATED_ERRORS:
                raise
            except Exception as e:
                out.error = f"{e.__class__.__name__}: {e}"
                break

            batch = normalize_entries(page.transactions)
            out.pages += 1
            out.scanned += len(batch)
            if budget is not None:
                budget.pages += 1
                budget.scanned += len(batch)

            cut = False
            for i, tx in enumerate(batch):
                if tx.account != address or not within_constraints(tx, c):
                    continue
                out.txs.append(tx)
                if len(out.txs) >= params.per_node:
                    cut = i < len(batch) - 1
                    break

            cursor = page.next_cursor
            logger.debug("page %d for %s: %d txs, %d kept", out.pages, address, len(batch), len(out.txs))
            if not page.transactions or not cursor:
                out.complete = not cut
                if cut:
                    out.stopped_by = "per_node"
                break

        out.txs = sort_txs_asc(out.txs)
        return out

    # -------------------------
    # Quick inspect
    # -------------------------

    async def quick_inspect(
        self,
        address: str,
        per_node: int = 120,
        constraints: Optional[Constraints] = None,
    ) -> InspectionResult:
        if not self._validate(address):
            raise InvalidAddressError(f"Invalid address: {address!r}")
        if self.scheduler.cancelled:
            self.scheduler.reset()

        params = TraceParams(per_node=per_node, constraints=constraints or Constraints())
        info, tokens, scan = await asyncio.gather(
            self.caches.get_account_info(address, self.scheduler, params.max_retries),
            self.caches.get_token_summary(address, self.scheduler, params.max_retries),
            self.collect_outgoing(address, params),
        )
        return InspectionResult(
            address=address,
            account_info=info.value,
            token_summary=tokens.value,
            outgoing=scan.txs,
            scan=ScanMeta(
                pages_scanned=scan.pages,
                tx_scanned=scan.scanned,
                complete=scan.complete,
                processed=True,
                error=scan.error,
            ),
        )

    # -------------------------
    # Helpers
    # -------------------------

    def _valid_seeds(self, seeds: Iterable[str]) -> List[str]:
        out: Dict[str, None] = {}
        for raw in seeds or []:
            s = str(raw or "").strip()
            if not s:
                continue
            if not self._validate(s):
                logger.warning("skipping invalid seed %r", s)
                continue
            out.setdefault(s, None)
        if not out:
            raise InvalidAddressError("No valid seed address")
        return list(out)

    def _cap(self, graph: Graph, reason: str, emit: ProgressCallback) -> None:
        if reason in graph.truncated_by:
            return
        graph.mark_truncated(reason)
        logger.info("cap reached: %s (nodes=%d edges=%d)", reason, graph.node_count, graph.edge_count)
        emit("cap", {"reason": reason, "nodes": graph.node_count, "edges": graph.edge_count})

    def _mark_cancelled(self, graph: Graph, emit: ProgressCallback) -> None:
        if graph.cancelled:
            return
        graph.cancelled = True
        logger.info("crawl cancelled (nodes=%d edges=%d)", graph.node_count, graph.edge_count)
        emit("cancelled", {"nodes": graph.node_count, "edges": graph.edge_count})

    @staticmethod
    def _emitter(on_progress: Optional[ProgressCallback]) -> ProgressCallback:
        def emit(event: str, data: Dict[str, Any]) -> None:
            if on_progress is None:
                return
            try:
                on_progress(event, data)
            except Exception:
                logger.exception("progress callback failed on %s", event)

        return emit


async def build_graph(
    gateway: LedgerGatewayPort,
    seeds: Iterable[str],
    params: Optional[TraceParams] = None,
    caches: Optional[AddressCacheService] = None,
    scheduler: Optional[RequestScheduler] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> Graph:
    builder = FlowGraphBuilder(gateway, caches=caches, scheduler=scheduler)
    return await builder.build(seeds, params, on_progress=on_progress)
