from __future__ import annotations

import argparse

from ledgerflow.analysis.patterns import detect_patterns
from ledgerflow.io.output_writer import read_graph_json, write_findings_json


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--input", required=True, help="Exported graph.json")
    parser.add_argument("--out", default="out", help="Output folder for findings.json")
    args = parser.parse_args()

    graph = read_graph_json(args.input)
    report = detect_patterns(graph)
    path = write_findings_json(report, args.out)

    s = report.summary()
    print(f"Findings: {s['total']} (high {s['high']}, medium {s['medium']}, low {s['low']})")
    print(f"Wrote: {path}")


if __name__ == "__main__":
    main()
