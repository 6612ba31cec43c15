# -----------------------
# How to run:
#
# 1) Exhaustive BOSS (full window/word-length grid):
#   python main.py --dataset GunPoint
#
# 2) Contracted random BOSS with checkpointing (resumes if interrupted):
#   python main.py --dataset GunPoint \
#     --time_limit 5 --time_unit minute \
#     --checkpoint_path checkpoints --keep_checkpoint 0
#
# 3) Random fixed-size BOSS, multivariate, 20 members per channel:
#   python main.py --dataset BasicMotions \
#     --random 1 --ensemble_size_per_channel 20 --train_estimate results/BasicMotions_train.csv
#
# 4) Random BOSS weighted by cross-validated accuracy, logistic head on histograms:
#   python main.py --dataset GunPoint --weighted_voting 1 --ensemble_size 30 --base_estimator logreg
# -----------------------

from __future__ import annotations
import argparse, time, random
from pathlib import Path
import csv

import numpy as np
from loguru import logger
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import accuracy_score

from tsboss.data_utils import load_ucr_uea_sktime
from tsboss.ensemble_functions import BOSS

# -----------------------
# Utilities
# -----------------------
def set_seed(seed: int = 42):
    random.seed(seed)
    np.random.seed(seed)

def _make_base_estimator(kind: str, seed: int):
    if kind == "none":
        return None
    if kind == "logreg":
        return LogisticRegression(max_iter=1000, random_state=seed)
    raise ValueError(f"Unknown base estimator '{kind}'")

def _append_result_csv(args, clf: BOSS, test_acc: float, elapsed_s: float):
    results_dir = Path("results")
    results_dir.mkdir(parents=True, exist_ok=True)
    out_csv = results_dir / "boss_results.csv"

    row = {
        "dataset": args.dataset,
        "strategy": clf.strategy,
        "seed": str(args.seed),
        "elapsed_sec": f"{elapsed_s:.2f}",
        "build_time_ms": str(clf.build_time_ms_),
        "ensemble_size": str(args.ensemble_size),
        "ensemble_size_per_channel": str(args.ensemble_size_per_channel),
        "max_ensemble_size": str(args.max_ensemble_size),
        "time_limit_ns": str(clf.contract_time_ns) if clf.contract else "",
        "base_estimator": args.base_estimator,
        "members": "/".join(str(v) for v in clf.n_classifiers_),
        "train_acc_estimate": f"{clf.ensemble_cv_accuracy_:.6f}" if clf.ensemble_cv_accuracy_ >= 0 else "",
        "test_acc": f"{test_acc:.6f}",
    }

    exists = out_csv.exists()
    with out_csv.open("a", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=list(row.keys()))
        if not exists:
            writer.writeheader()
        writer.writerow(row)
    logger.info(f"[results] appended to {out_csv}")

# -----------------------
# Main
# -----------------------
def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--dataset", type=str, required=True)
    ap.add_argument("--seed", type=int, default=0)

    # strategy
    ap.add_argument("--random", type=int, default=0)
    ap.add_argument("--weighted_voting", type=int, default=0)
    ap.add_argument("--time_limit", type=int, default=None)   # ns, or a count of --time_unit
    ap.add_argument("--time_unit", type=str, default=None, choices=["minute", "hour", "day"])

    # ensemble size
    ap.add_argument("--ensemble_size", type=int, default=50)
    ap.add_argument("--ensemble_size_per_channel", type=int, default=-1)
    ap.add_argument("--max_ensemble_size", type=int, default=500)
    ap.add_argument("--cv_folds", type=int, default=10)
    ap.add_argument("--base_estimator", type=str, default="none", choices=["none", "logreg"])

    # checkpoint / outputs
    ap.add_argument("--checkpoint_path", type=str, default=None)
    ap.add_argument("--keep_checkpoint", type=int, default=0)
    ap.add_argument("--train_estimate", type=str, default=None)

    args = ap.parse_args()
    set_seed(args.seed)
    wall0 = time.time()

    # 1) Data
    train, test = load_ucr_uea_sktime(args.dataset)
    logger.info(f"[data] {args.dataset}: train={train.n_instances} test={test.n_instances} "
                f"channels={train.n_channels} length={train.series_length} classes={train.classes.size}")

    # 2) Classifier
    clf = BOSS(
        seed=args.seed,
        ensemble_size=args.ensemble_size,
        ensemble_size_per_channel=args.ensemble_size_per_channel,
        random_ensemble_selection=bool(args.random),
        use_weighted_voting=bool(args.weighted_voting),
        n_cv_folds=args.cv_folds,
        base_estimator=_make_base_estimator(args.base_estimator, args.seed),
        max_ensemble_size=args.max_ensemble_size,
        checkpoint_path=args.checkpoint_path,
        cleanup_checkpoint_files=not bool(args.keep_checkpoint),
        train_estimate_path=args.train_estimate,
    )
    if args.time_limit is not None:
        if args.time_unit is not None:
            clf.set_time_limit(args.time_unit, args.time_limit)
        else:
            clf.set_time_limit(args.time_limit)

    # 3) Train
    clf.fit(train)

    # 4) Evaluate
    y_pred = clf.predict(test.X)
    test_acc = accuracy_score(test.classes[test.y], y_pred)
    logger.info(f"[final] {args.dataset} strategy={clf.strategy} test_acc={test_acc:.4f} "
                f"members={clf.n_classifiers_}")

    # 5) Append CSV
    _append_result_csv(args, clf, float(test_acc), time.time() - wall0)

if __name__ == "__main__":
    main()
