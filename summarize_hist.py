#!/usr/bin/env python3
import sys

from csvdelta import decode_histogram

# Decode base64 histograms written by csvdelta.py and print a markdown table of percentiles.
# Usage: summarize_hist.py run_a.txt run_b.txt ...   (no args: one histogram per stdin line)

PERCENTILES = (50.0, 90.0, 99.0, 99.9)

def summarize(label, text):
    hist = decode_histogram(text)
    pcts = [hist.get_value_at_percentile(p) for p in PERCENTILES]
    return (label, hist.get_total_count(), hist.get_min_value(), pcts, hist.get_max_value())

def read_inputs(paths):
    if not paths:
        return [(f"stdin:{i}", ln) for i, ln in enumerate(sys.stdin, start=1) if ln.strip()]
    rows = []
    for path in paths:
        with open(path) as f:
            rows.append((path, f.read()))
    return rows

def main():
    rows = [summarize(label, text) for label, text in read_inputs(sys.argv[1:])]
    if not rows:
        print("Usage: summarize_hist.py hist1.txt [hist2.txt ...]  (or histograms on stdin)", file=sys.stderr)
        sys.exit(2)
    heads = ["p50", "p90", "p99", "p99.9"]
    print("\n## Delta distribution\n")
    print("| Input | Count | Min | " + " | ".join(heads) + " | Max |")
    print("|-------|-------|-----|" + "|".join("-" * (len(h) + 2) for h in heads) + "|-----|")
    for label, count, lo, pcts, hi in rows:
        cells = " | ".join(f"{v:,}" for v in pcts)
        print(f"| {label} | {count:,} | {lo:,} | {cells} | {hi:,} |")
    print()

if __name__ == "__main__":
    main()
