from __future__ import annotations

import argparse

from ledgerflow.io.output_writer import read_graph_json, write_edges_csv


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--input", required=True, help="Exported graph.json")
    parser.add_argument("--out", default="out", help="Output folder")
    parser.add_argument("--filename", default="edges.csv", help="CSV file name")
    args = parser.parse_args()

    graph = read_graph_json(args.input)
    print("Wrote:", write_edges_csv(graph, args.out, filename=args.filename))


if __name__ == "__main__":
    main()
