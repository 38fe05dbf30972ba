#!/usr/bin/env python3
import csv, random, sys
from pathlib import Path

# Usage: python make_csv.py out_prefix rows window null_rate seed
# Example: python make_csv.py /tmp/lat 10_000_000 64 0.01 1337
# Writes <prefix>_lhs.csv (id,recv) and <prefix>_rhs.csv (id,sent). The right file
# holds the same ids shuffled within blocks of `window` rows, so a join never
# needs to park more than about `window` rows.

def main():
    if len(sys.argv) != 6:
        print("Usage: python make_csv.py out_prefix rows window null_rate seed", file=sys.stderr)
        sys.exit(2)
    prefix, rows, window, null_rate, seed = (
        sys.argv[1], int(sys.argv[2].replace('_','')), int(sys.argv[3]),
        float(sys.argv[4]), int(sys.argv[5])
    )
    random.seed(seed)
    rr = random.random
    ri = random.randint
    lhs_path = Path(f"{prefix}_lhs.csv")
    rhs_path = Path(f"{prefix}_rhs.csv")
    with lhs_path.open("w", newline="") as lf, rhs_path.open("w", newline="") as rf:
        lw = csv.writer(lf)
        rw = csv.writer(rf)
        lw.writerow(["id", "recv"])
        rw.writerow(["id", "sent"])
        clock = 1_000_000
        block = []
        for i in range(rows):
            key = f"m{i:010d}"
            clock += ri(1, 50)
            latency = int(random.lognormvariate(6.0, 0.8))
            lw.writerow([key, "" if rr() < null_rate else clock + latency])
            block.append([key, clock])
            if len(block) >= window:
                random.shuffle(block)
                rw.writerows(block)
                block = []
        random.shuffle(block)
        rw.writerows(block)

if __name__ == "__main__":
    main()
