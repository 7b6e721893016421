from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import json
import logging
import signal
import sys
import time
from typing import List, Optional

from ledgerflow.config import settings
from ledgerflow.core.amounts import short_addr
from ledgerflow.core.errors import InvalidAddressError, TracerError
from ledgerflow.core.models import Constraints, Graph, TraceParams
from ledgerflow.core.normalize import parse_address_list
from ledgerflow.analysis.paths import find_path
from ledgerflow.analysis.patterns import detect_patterns
from ledgerflow.services.graph_builder import FlowGraphBuilder
from ledgerflow.services.request_scheduler import RequestScheduler
from ledgerflow.io.output_writer import (
    read_graph_json,
    write_edges_csv,
    write_findings_json,
    write_graph_json,
    write_summary_md,
)
from ledgerflow.io.schemas import inspection_to_dict

from ledgerflow.adapters.ledger.jsonrpc_ledger_adapter import JsonRpcLedgerAdapter
from ledgerflow.adapters.ledger.static_ledger_adapter import StaticLedgerAdapter


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ledgerflow", description="Bounded XRPL flow-graph crawler and analyzer")
    p.add_argument("--seed", action="append", default=[], help="Seed address (repeatable or comma-separated)")
    p.add_argument("--depth", type=int, default=settings.DEFAULT_DEPTH, help="Max BFS depth (1-10)")
    p.add_argument("--per-node", type=int, default=settings.DEFAULT_PER_NODE, help="Outgoing transactions kept per account")
    p.add_argument("--max-accounts", type=int, default=settings.DEFAULT_MAX_ACCOUNTS, help="Node cap")
    p.add_argument("--max-edges", type=int, default=settings.DEFAULT_MAX_EDGES, help="Edge cap")
    p.add_argument("--ledger-min", type=int, default=None, help="Lowest ledger index to include")
    p.add_argument("--ledger-max", type=int, default=None, help="Highest ledger index to include")
    p.add_argument("--start-date", default=None, help="ISO date/time lower bound (UTC)")
    p.add_argument("--end-date", default=None, help="ISO date/time upper bound (UTC, date-only is inclusive)")
    p.add_argument("--min-xrp", default=None, help="Drop XRP-denominated transfers below this amount")
    p.add_argument("--max-concurrent", type=int, default=settings.SCHEDULER_MAX_CONCURRENT, help="Parallel requests")
    p.add_argument("--out", default="out", help="Output folder")
    p.add_argument("--csv", action="store_true", help="Also write edges.csv")
    p.add_argument("--no-patterns", action="store_true", help="Skip pattern detection")
    p.add_argument("--use-static", metavar="FILE", help="Read ledger data from a fixture JSON (dev/testing)")
    p.add_argument("--inspect", metavar="ADDRESS", help="Quick inspect one account and print JSON")
    p.add_argument("--analyze", metavar="FILE", help="Analyze an exported graph.json without fetching")
    p.add_argument("--path", nargs=2, metavar=("SRC", "DST"), help="Print the shortest path between two accounts")
    p.add_argument("--log-level", default=settings.LOG_LEVEL, help="Logging level (DEBUG, INFO, ...)")
    return p


def _make_progress_reporter(seeds: List[str], params: TraceParams):
    start_time = time.time()
    last_print = 0.0
    is_tty = sys.stdout.isatty()

    def _ts() -> str:
        return dt.datetime.now().strftime("%H:%M:%S")

    def _print_line(message: str) -> None:
        if is_tty:
            sys.stdout.write("\r" + message.ljust(88))
            sys.stdout.flush()
        else:
            print(message)

    def _clear_line() -> None:
        if is_tty:
            sys.stdout.write("\r" + (" " * 88) + "\r")
            sys.stdout.flush()

    def progress(event: str, data: dict) -> None:
        nonlocal last_print
        now = time.time()
        if event == "start":
            shown = ", ".join(short_addr(s) for s in seeds)
            print(f"[{_ts()}] Crawling {shown} • depth {params.max_depth} • {params.per_node}/node")
            return
        if event == "visit":
            if not is_tty and data["nodes"] % 25 != 0:
                return
            if is_tty and now - last_print < 0.2:
                return
            msg = (
                f"Depth {data['depth']}/{params.max_depth} • "
                f"{short_addr(data['address'])} • "
                f"queue {data['queued']} • "
                f"nodes {data['nodes']} • "
                f"edges {data['edges']}"
            )
            _print_line(msg)
            last_print = now
            return
        if event == "requests":
            if not is_tty or now - last_print < 0.5:
                return
            _print_line(
                f"Requests {data['completed']}/{data['total']} • "
                f"active {data['active']} • retried {data['retried']} • failed {data['failed']}"
            )
            last_print = now
            return
        if event == "node_failed":
            _clear_line()
            print(f"[{_ts()}] Incomplete {short_addr(data['address'])}: {data['error']}", file=sys.stderr)
            return
        if event == "cap":
            _clear_line()
            print(f"[{_ts()}] Cap reached: {data['reason']}")
            return
        if event == "cancelled":
            _clear_line()
            print(f"[{_ts()}] Cancelled, keeping partial graph")
            return
        if event == "done":
            _clear_line()
            elapsed = time.time() - start_time
            print(
                f"[{_ts()}] Done in {elapsed:.1f}s • "
                f"{data['nodes']} nodes • {data['edges']} edges"
            )
            return
        if event == "error":
            _clear_line()
            print(f"[{_ts()}] Error: {data.get('message', 'Unknown error')}", file=sys.stderr)

    return progress


def _seeds_from_args(raw: List[str]) -> List[str]:
    valid, rejected = parse_address_list(",".join(raw))
    for r in rejected:
        print(f"Skipping invalid seed: {r}", file=sys.stderr)
    return valid


def _params_from_args(args: argparse.Namespace) -> TraceParams:
    constraints = Constraints.from_values(
        ledger_min=args.ledger_min,
        ledger_max=args.ledger_max,
        start_date=args.start_date,
        end_date=args.end_date,
        min_xrp=args.min_xrp,
    )
    return TraceParams(
        max_depth=args.depth,
        per_node=args.per_node,
        max_accounts=args.max_accounts,
        max_edges=args.max_edges,
        constraints=constraints,
    )


def _make_gateway(args: argparse.Namespace):
    if args.use_static:
        return StaticLedgerAdapter.from_fixture(args.use_static), f"StaticLedgerAdapter ({args.use_static})"
    return JsonRpcLedgerAdapter(), f"JsonRpcLedgerAdapter ({settings.LEDGER_RPC_URL})"


async def _crawl(builder: FlowGraphBuilder, seeds: List[str], params: TraceParams, progress) -> Graph:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, builder.cancel)
    except (NotImplementedError, RuntimeError):
        # no signal handlers on this loop; Ctrl-C aborts without a partial graph
        pass
    try:
        return await builder.build(seeds, params, on_progress=progress)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _print_path(graph: Graph, src: str, dst: str) -> None:
    path = find_path(graph, src, dst)
    if path is None:
        print(f"No path {src} -> {dst} in the graph")
    else:
        print(f"Path ({len(path) - 1} hop(s)): " + " -> ".join(path))


def _write_outputs(args: argparse.Namespace, graph: Graph) -> None:
    report = None if args.no_patterns else detect_patterns(graph)

    print("Writing outputs...")
    written = [write_graph_json(graph, args.out)]
    if report is not None:
        written.append(write_findings_json(report, args.out))
    if args.csv:
        written.append(write_edges_csv(graph, args.out))
    written.append(write_summary_md(graph, args.out, report=report))
    for path in written:
        print(f"Wrote: {path}")

    if report is not None:
        s = report.summary()
        print(f"Findings: {s['total']} (high {s['high']}, medium {s['medium']}, low {s['low']})")
    if args.path:
        _print_path(graph, args.path[0], args.path[1])


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # offline analysis
    if args.analyze:
        try:
            graph = read_graph_json(args.analyze)
        except (OSError, ValueError, KeyError, TracerError) as exc:
            print(f"Cannot load {args.analyze}: {exc}", file=sys.stderr)
            return 1
        print(f"Loaded {args.analyze}: {graph.node_count} nodes, {graph.edge_count} edges")
        _write_outputs(args, graph)
        return 0

    gateway, adapter_label = _make_gateway(args)
    scheduler = RequestScheduler(max_concurrent=max(1, args.max_concurrent))
    builder = FlowGraphBuilder(gateway, scheduler=scheduler)

    if args.inspect:
        try:
            result = asyncio.run(builder.quick_inspect(args.inspect))
        except InvalidAddressError as exc:
            print(str(exc), file=sys.stderr)
            return 2
        except TracerError as exc:
            print(f"Inspect failed: {exc.__class__.__name__}: {exc}", file=sys.stderr)
            return 1
        print(json.dumps(inspection_to_dict(result), indent=2, ensure_ascii=False))
        return 0

    seeds = _seeds_from_args(args.seed)
    if not seeds:
        print("Missing --seed for crawling", file=sys.stderr)
        return 2
    try:
        params = _params_from_args(args)
    except ValueError as exc:
        print(f"Bad constraint: {exc}", file=sys.stderr)
        return 2

    progress = _make_progress_reporter(seeds, params)
    print(f"Adapter: {adapter_label}")
    try:
        graph = asyncio.run(_crawl(builder, seeds, params, progress))
    except InvalidAddressError as exc:
        progress("error", {"message": str(exc)})
        return 2
    except TracerError as exc:
        progress("error", {"message": f"{exc.__class__.__name__}: {exc}"})
        return 1

    _write_outputs(args, graph)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
