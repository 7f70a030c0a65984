"""
Run a CD-CAT simulation over CSV inputs and write the results as JSON.

Inputs are headerless, comma-separated numeric matrices:
    --q-matrix   J x K Q-matrix (required)
    --responses  N x J response matrix (required)
    --lc-prob    J x 2^K latent-class probabilities, columns in canonical
                 pattern order (required for parametric selection rules)

Example:
    python scripts/run_cdcat.py --q-matrix q.csv --responses dat.csv \\
        --lc-prob lc.csv --item-select GDI --max-items 10 --output result.json

Exit codes:
    0 - Success (individual examinee failures are reported in the output)
    2 - Configuration error
    3 - Input/IO error
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

import numpy as np

logger = logging.getLogger("cdcat.scripts.run_cdcat")


def _load_matrix(path: str) -> np.ndarray:
    return np.loadtxt(path, delimiter=",", dtype=float, ndmin=2)


def build_parser() -> argparse.ArgumentParser:
    from cdcat.core.config import ITEM_SELECTION_RULES, settings

    parser = argparse.ArgumentParser(description="Simulate CD-CAT sessions from CSV inputs")
    parser.add_argument("--q-matrix", required=True, help="CSV file with the J x K Q-matrix")
    parser.add_argument("--responses", required=True, help="CSV file with the N x J responses")
    parser.add_argument(
        "--lc-prob",
        help="CSV file with the J x 2^K latent-class probabilities (parametric rules)",
    )
    parser.add_argument("--model", default="GDINA", help="Model label stored with the results")
    parser.add_argument(
        "--item-select",
        choices=ITEM_SELECTION_RULES,
        default=settings.DEFAULT_ITEM_SELECTION,
        help=f"Item selection rule (default: {settings.DEFAULT_ITEM_SELECTION})",
    )
    parser.add_argument(
        "--max-items",
        type=int,
        default=settings.DEFAULT_MAX_ITEMS,
        help=f"Maximum number of items per examinee (default: {settings.DEFAULT_MAX_ITEMS})",
    )
    parser.add_argument(
        "--fixed-precision",
        action="store_true",
        help="Stop early once the precision cutoff is reached",
    )
    parser.add_argument(
        "--precision-cut",
        type=float,
        default=settings.DEFAULT_PRECISION_CUT,
        help=f"Precision cutoff (default: {settings.DEFAULT_PRECISION_CUT})",
    )
    parser.add_argument("--gate", choices=("AND", "OR"), help="Gate for item_select=NPS")
    parser.add_argument(
        "--no-pseudo-prob",
        action="store_true",
        help="Do not compute pseudo-posterior probabilities (NPS)",
    )
    parser.add_argument("--w-type", type=int, choices=(1, 2), default=1, help="NPS weight type")
    parser.add_argument("--seed", type=int, help="Base random seed")
    parser.add_argument(
        "--n-workers",
        type=int,
        default=settings.DEFAULT_N_WORKERS,
        help=f"Worker threads (default: {settings.DEFAULT_N_WORKERS})",
    )
    parser.add_argument("--quiet", action="store_true", help="Do not log progress")
    parser.add_argument("--output", help="Write JSON here instead of stdout")
    parser.add_argument("--log-level", help="Override CDCAT_LOG_LEVEL")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    from cdcat.core.cat import ConfigurationError, ItemBank, run_cdcat
    from cdcat.core.logging_config import setup_logging

    setup_logging(level=args.log_level)

    try:
        q_matrix = _load_matrix(args.q_matrix)
        responses = _load_matrix(args.responses)
        lc_prob = _load_matrix(args.lc_prob) if args.lc_prob else None
    except (OSError, ValueError) as exc:
        logger.error("Failed to read input: %s", exc)
        return 3

    options = {
        "item_select": args.item_select,
        "max_items": args.max_items,
        "fixed_length": not args.fixed_precision,
        "precision_cut": args.precision_cut,
        "n_workers": args.n_workers,
        "print_progress": not args.quiet,
    }
    if args.item_select == "NPS":
        options["nps_args"] = {
            "gate": args.gate,
            "pseudo_prob": not args.no_pseudo_prob,
            "w_type": args.w_type,
            "seed": args.seed,
        }
    else:
        options["seed"] = args.seed

    try:
        item_bank = None
        if lc_prob is not None:
            item_bank = ItemBank(q_matrix=q_matrix, lc_prob=lc_prob, model=args.model)
        result = run_cdcat(responses, item_bank=item_bank, q_matrix=q_matrix, **options)
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    payload = json.dumps(result.to_dict(), indent=2)
    try:
        if args.output:
            with open(args.output, "w", encoding="utf-8") as f:
                f.write(payload)
            logger.info("Wrote results for %d examinees to %s", len(result), args.output)
        else:
            print(payload, flush=True)
    except OSError as exc:
        logger.error("Failed to write output: %s", exc)
        return 3

    if result.failures:
        logger.warning("%d examinee session(s) failed", len(result.failures))
    return 0


if __name__ == "__main__":
    sys.exit(main())
