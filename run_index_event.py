# =========================================== #
# Index event adjustment runner
#
# Reads summary statistics (xbeta, xse, ybeta, yse) from a CSV, or simulates
# them, adjusts the subsequent-trait effects for index event bias and writes:
#   - adjusted.csv        : input columns plus ybeta_adj, yse_adj, ychisq_adj, yp_adj
#   - simex_estimates.csv : Lambda, Coefficient, Variance (SIMEX only)
#   - summary.csv         : corrected slope, SE, CI, raw slope
#
# Usage:
#   index-event --input stats.csv --method simex --B 200 --out-dir results
#   index-event --simulate --method hedges --out-dir results
# =========================================== #

import argparse
import logging
import sys
from pathlib import Path

import numpy as np
import pandas as pd
from tqdm import tqdm

from index_event import METHODS, index_event, resolve_method
from simex_utils import DataParams, SimexParams, default_lambdas, gen_dataset

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["xbeta", "xse", "ybeta", "yse"]


def setup_logging(level=logging.INFO):
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    logging.captureWarnings(True)


def build_parser():
    defaults = SimexParams()
    parser = argparse.ArgumentParser(
        prog="index-event",
        description="Adjust association statistics for index event bias."
    )

    # ---- I/O ----
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument("--input", type=str, help="CSV with columns xbeta, xse, ybeta, yse.")
    src.add_argument("--simulate", action="store_true",
                     help="Use simulated summary statistics instead of --input.")
    parser.add_argument("--prune", type=str, default=None,
                        help="Text file of 0-based row indices of independent predictors.")
    parser.add_argument("--out-dir", type=str, default="./index_event_out",
                        help="Output directory. If not given, uses ./index_event_out.")

    # ---- Method ----
    parser.add_argument("--method", type=str, default="Hedges-Olkin",
                        help=f"One of {', '.join(METHODS)} (case-insensitive prefix).")
    parser.add_argument("--B", type=int, default=defaults.B,
                        help="SIMEX replicates per lambda.")
    parser.add_argument("--lambda-start", type=float, default=defaults.lambda_start)
    parser.add_argument("--lambda-end", type=float, default=defaults.lambda_end)
    parser.add_argument("--lambda-step", type=float, default=defaults.lambda_step)
    parser.add_argument("--seed", type=int, default=defaults.seed,
                        help="Seed for SIMEX (and for --simulate).")
    parser.add_argument("--n-jobs", type=int, default=defaults.n_jobs,
                        help="Worker processes for the SIMEX replicates.")

    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--no-progress", action="store_true")
    return parser


def load_inputs(args):
    if args.simulate:
        df = gen_dataset(DataParams(), seed=args.seed)
        logger.info("Simulated %d predictors", len(df))
    else:
        df = pd.read_csv(args.input)
        missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise SystemExit(f"{args.input}: missing columns {missing}")
    prune = None
    if args.prune:
        prune = np.loadtxt(args.prune, dtype=int, ndmin=1)
    return df, prune


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(getattr(logging, args.log_level))

    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    df, prune = load_inputs(args)

    lambdas = default_lambdas(SimexParams(
        lambda_start=args.lambda_start, lambda_end=args.lambda_end, lambda_step=args.lambda_step
    ))
    bar = None
    progress = None
    if not args.no_progress and resolve_method(args.method) == "SIMEX":
        bar = tqdm(total=args.B * lambdas.size, desc="SIMEX", unit="fit")

        def progress(done, total):
            bar.update(done - bar.n)

    try:
        res = index_event(
            df["xbeta"], df["xse"], df["ybeta"], df["yse"], prune=prune,
            method=args.method, B=args.B, lambdas=lambdas, seed=args.seed,
            n_jobs=args.n_jobs, progress=progress,
        )
    finally:
        if bar is not None:
            bar.close()

    adjusted = pd.concat([df[REQUIRED_COLUMNS].reset_index(drop=True), res.to_frame()], axis=1)
    adjusted.to_csv(out_dir / "adjusted.csv", index=False)
    if res.simex_estimates is not None:
        res.simex_estimates.to_csv(out_dir / "simex_estimates.csv", index=False)
    pd.DataFrame([res.summary()]).to_csv(out_dir / "summary.csv", index=False)

    print(res)
    print("[OK] Adjustment finished.")
    print(" out_dir :", out_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
