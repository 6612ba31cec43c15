from __future__ import annotations

import math
from pathlib import Path
from typing import Any, List, Literal, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from .boss_functions import BOSSIndividual
from .data_utils import TimeSeriesDataset, as_channel_first, split_channels
from .ensemble_utils import (
    CheckpointManager,
    CrossValidatedWeightedVoting,
    TrainingClock,
    checkpoint_folder_name,
    to_nanoseconds,
)
from .errors import CheckpointError
from .sfa_utils import ALPHABET_SIZE, MAX_WORD_LENGTH, MIN_WINDOW, WORD_LENGTHS

Strategy = Literal["exhaustive", "contract", "random", "weighted_voting"]

CORRECT_THRESHOLD = 0.92
MAX_ENSEMBLE_SIZE = 500


# =========================================================
#  Window grid
# =========================================================

def window_increment(series_length: int) -> int:
    """Step between candidate windows: about L/4 windows between MIN_WINDOW and L."""
    lo = min(MIN_WINDOW, series_length)
    return max(1, int(math.ceil((series_length - lo) / (series_length / 4.0))))


def candidate_windows(series_length: int) -> List[int]:
    lo = min(MIN_WINDOW, series_length)
    return list(range(lo, series_length + 1, window_increment(series_length)))


# =========================================================
#  Ensemble coordinator
# =========================================================

class BOSS:
    """
    Bag of SFA Symbols ensemble.

    One group of BOSSIndividual members per channel; multivariate data is
    handled channel-independently and the per-channel votes are averaged.

    Strategies (picked at fit time):
      contract        -> random configurations until the time budget runs out
      weighted_voting -> random configurations weighted by a CV aggregator
      random          -> random configurations up to a fixed member count
      exhaustive      -> full grid with leave-one-out accuracy pruning
    """

    def __init__(
        self,
        *,
        seed: int = 0,
        ensemble_size: int = 50,
        ensemble_size_per_channel: int = -1,
        random_ensemble_selection: bool = False,
        use_weighted_voting: bool = False,
        n_cv_folds: int = 10,
        base_estimator: Optional[Any] = None,
        max_ensemble_size: int = MAX_ENSEMBLE_SIZE,
        checkpoint_path: Optional[str] = None,
        cleanup_checkpoint_files: bool = True,
        train_estimate_path: Optional[str] = None,
    ):
        self.seed = int(seed)
        self.ensemble_size = int(ensemble_size)
        self.ensemble_size_per_channel = int(ensemble_size_per_channel)
        self.random_ensemble_selection = bool(random_ensemble_selection)
        self.use_weighted_voting = bool(use_weighted_voting)
        self.n_cv_folds = int(n_cv_folds)
        self.base_estimator = base_estimator
        self.max_ensemble_size = int(max_ensemble_size)
        self.checkpoint_path = checkpoint_path
        self.cleanup_checkpoint_files = bool(cleanup_checkpoint_files)
        self.train_estimate_path = train_estimate_path

        self.contract = False
        self.contract_time_ns = 0

        # fitted state
        self.classifiers_: List[List[BOSSIndividual]] = []
        self.aggregators_: Optional[List[Optional[CrossValidatedWeightedVoting]]] = None
        self.classes_: Optional[np.ndarray] = None
        self.n_channels_ = 0
        self.is_multivariate_ = False
        self.name_ = "dataset"
        self.build_time_ms_ = -1
        self.ensemble_cv_accuracy_ = -1.0
        self.ensemble_cv_predictions_: Optional[np.ndarray] = None
        self.ensemble_cv_proba_: Optional[np.ndarray] = None

        self._rng: Optional[np.random.Generator] = None
        self._train_series: Optional[List[np.ndarray]] = None
        self._train_y: Optional[np.ndarray] = None

    # ---------------------------
    # Configuration
    # ---------------------------
    def set_time_limit(self, time_limit, amount: Optional[int] = None) -> "BOSS":
        """Raw nanoseconds, or a TimeLimit unit (or its name) times `amount`."""
        self.contract_time_ns = to_nanoseconds(time_limit, amount)
        self.contract = True
        return self

    def set_checkpoint_path(self, path) -> "BOSS":
        self.checkpoint_path = None if path is None else str(path)
        return self

    @property
    def strategy(self) -> Strategy:
        if self.contract:
            return "contract"
        if self.use_weighted_voting:
            return "weighted_voting"
        if self.random_ensemble_selection:
            return "random"
        return "exhaustive"

    def target_size(self, n_channels: int) -> int:
        if n_channels > 1 and self.ensemble_size_per_channel > 0:
            return self.ensemble_size_per_channel * n_channels
        return self.ensemble_size

    def strategy_tag(self, n_channels: int) -> str:
        s = self.strategy
        if s == "contract":
            return f"RandomContract{self.contract_time_ns}"
        if s == "weighted_voting":
            return f"RandomCAWPE{self.target_size(n_channels)}"
        if s == "random":
            return f"Random{self.target_size(n_channels)}"
        return ""

    def checkpoint_directory(self, name: str, n_channels: int) -> Optional[Path]:
        if self.checkpoint_path is None:
            return None
        return Path(self.checkpoint_path) / checkpoint_folder_name(name, self.seed, self.strategy_tag(n_channels))

    @property
    def n_classifiers_(self) -> List[int]:
        return [len(c) for c in self.classifiers_]

    # ---------------------------
    # Fit
    # ---------------------------
    def fit(self, X, y=None, *, name: Optional[str] = None) -> "BOSS":
        data = X if isinstance(X, TimeSeriesDataset) else TimeSeriesDataset.from_arrays(X, y, name=name or "dataset")
        data.check_class_last()

        self.name_ = name or data.name
        self.classes_ = np.asarray(data.classes)
        self.n_channels_ = data.n_channels
        self.is_multivariate_ = data.is_multivariate
        self.aggregators_ = None

        series = split_channels(data.X)
        y_idx = np.asarray(data.y, dtype=np.int64)
        self._train_series = series
        self._train_y = y_idx

        strategy = self.strategy
        manager: Optional[CheckpointManager] = None
        if strategy in ("contract", "random") and self.checkpoint_path is not None:
            manager = CheckpointManager(
                self.checkpoint_directory(self.name_, self.n_channels_),
                cleanup=self.cleanup_checkpoint_files,
            )

        clock = TrainingClock()
        cursor = 0
        if manager is not None and manager.exists():
            cursor = self._restore(manager, clock)
        else:
            self.classifiers_ = [[] for _ in range(self.n_channels_)]
            self._rng = np.random.default_rng(self.seed)

        logger.info(
            f"[boss] fit '{self.name_}' strategy={strategy} n={data.n_instances} "
            f"channels={self.n_channels_} length={data.series_length}"
        )

        if strategy == "exhaustive":
            self._fit_exhaustive(series, y_idx)
        elif strategy == "contract":
            self._fit_contract(series, y_idx, clock, manager, cursor)
        elif strategy == "random":
            self._fit_random(series, y_idx, clock, manager, cursor)
        else:
            self._fit_weighted_voting(series, y_idx)

        self.build_time_ms_ = clock.elapsed_ns() // 10**6
        logger.info(f"[boss] done: members per channel={self.n_classifiers_} build_time={self.build_time_ms_}ms")

        if self.train_estimate_path is not None:
            self.write_train_estimate(self.train_estimate_path)

        if manager is not None and self.cleanup_checkpoint_files:
            manager.cleanup()
        return self

    # ---------------------------
    # Strategies
    # ---------------------------
    def _fit_exhaustive(self, series: Sequence[np.ndarray], y: np.ndarray):
        for c, Xc in enumerate(series):
            members = self.classifiers_[c]
            windows = candidate_windows(Xc.shape[1])
            max_acc = -1.0
            min_max_acc = -1.0

            for normalise in (True, False):
                for window in windows:
                    boss = BOSSIndividual(MAX_WORD_LENGTH, ALPHABET_SIZE, window, normalise,
                                          base_estimator=self.base_estimator).fit(Xc, y)
                    best, best_acc = None, -1.0
                    for word_length in WORD_LENGTHS:
                        boss = boss.rebuild_at_word_length(word_length)
                        acc = self._leave_one_out_accuracy(boss, y)
                        if acc >= best_acc:
                            best, best_acc = boss, acc
                    logger.debug(f"[boss] channel {c} window={window} norm={normalise} "
                                 f"best word_length={best.word_length} loo_acc={best_acc:.4f}")

                    if not self._makes_it_into_ensemble(best_acc, max_acc, min_max_acc, len(members)):
                        continue

                    best.release()
                    best.accuracy = best_acc
                    members.append(best)

                    if best_acc > max_acc:
                        max_acc = best_acc
                        members[:] = [m for m in members if m.accuracy >= max_acc * CORRECT_THRESHOLD]

                    while len(members) > self.max_ensemble_size:
                        del members[self._worst_member(members)]
                    min_max_acc = min(m.accuracy for m in members)

    @staticmethod
    def _leave_one_out_accuracy(boss: BOSSIndividual, y: np.ndarray) -> float:
        correct = sum(1 for i in range(y.shape[0]) if boss.classify_holding_out(i) == y[i])
        return correct / y.shape[0]

    def _makes_it_into_ensemble(self, acc: float, max_acc: float, min_max_acc: float, size: int) -> bool:
        if acc < max_acc * CORRECT_THRESHOLD:
            return False
        return size < self.max_ensemble_size or acc > min_max_acc

    @staticmethod
    def _worst_member(members: Sequence[BOSSIndividual]) -> int:
        """Index of the lowest-accuracy member; the earliest one on ties."""
        worst = 0
        for i in range(1, len(members)):
            if members[i].accuracy < members[worst].accuracy:
                worst = i
        return worst

    def _fit_contract(self, series, y, clock: TrainingClock, manager: Optional[CheckpointManager], cursor: int):
        L = series[0].shape[1]
        while (clock.elapsed_ns() < self.contract_time_ns
               and len(self.classifiers_[-1]) < self.max_ensemble_size):
            cursor = self._add_random_member(series, y, L, clock, manager, cursor)

        total = sum(self.n_classifiers_)
        logger.info(
            f"[contract] {total} members in {clock.elapsed_ns() / 1e9:.2f}s "
            f"(budget {self.contract_time_ns / 1e9:.2f}s, cap {self.max_ensemble_size} on last channel)"
        )

    def _fit_random(self, series, y, clock: TrainingClock, manager: Optional[CheckpointManager], cursor: int):
        L = series[0].shape[1]
        target = self.target_size(len(series))
        while sum(self.n_classifiers_) < target:
            cursor = self._add_random_member(series, y, L, clock, manager, cursor)

    def _fit_weighted_voting(self, series, y):
        L = series[0].shape[1]
        target = self.target_size(len(series))
        cursor = 0
        while sum(self.n_classifiers_) < target:
            word_length, window, normalise = self._draw_configuration(L)
            self.classifiers_[cursor].append(
                BOSSIndividual(word_length, ALPHABET_SIZE, window, normalise,
                               base_estimator=self.base_estimator, clean_after_fit=True)
            )
            cursor = self._next_channel(cursor)

        self.aggregators_ = []
        for c, Xc in enumerate(series):
            if not self.classifiers_[c]:
                # fewer members than channels: this channel casts no vote
                self.aggregators_.append(None)
                logger.warning(f"[boss] channel {c} has no members; skipping its aggregator")
                continue
            agg = CrossValidatedWeightedVoting(n_folds=self.n_cv_folds, seed=self.seed)
            agg.set_members(self.classifiers_[c])
            agg.fit(Xc, y)
            self.aggregators_.append(agg)
            logger.info(f"[boss] channel {c} voting weights={np.round(agg.weights_, 4).tolist()}")

    def _add_random_member(self, series, y, L: int, clock: TrainingClock,
                           manager: Optional[CheckpointManager], cursor: int) -> int:
        word_length, window, normalise = self._draw_configuration(L)
        boss = BOSSIndividual(word_length, ALPHABET_SIZE, window, normalise,
                              base_estimator=self.base_estimator, clean_after_fit=True)
        boss.fit(series[cursor], y)
        self.classifiers_[cursor].append(boss)
        logger.debug(f"[boss] channel {cursor} + {boss.describe()}")

        channel = cursor
        cursor = self._next_channel(cursor)
        if manager is not None:
            spent = manager.save(
                self._checkpoint_metadata(clock, cursor),
                member=boss,
                channel=channel,
                position=len(self.classifiers_[channel]) - 1,
                members=self.classifiers_,
            )
            clock.add_overhead(spent)
        return cursor

    def _draw_configuration(self, L: int) -> Tuple[int, int, bool]:
        rng = self._rng
        lo = min(MIN_WINDOW, L)
        word_length = WORD_LENGTHS[int(rng.integers(len(WORD_LENGTHS)))]
        window = min(L, lo + window_increment(L) * int(rng.integers(int(L / 4) + 1)))
        normalise = bool(rng.integers(2))
        return word_length, window, normalise

    def _next_channel(self, cursor: int) -> int:
        return (cursor + 1) % self.n_channels_ if self.is_multivariate_ else 0

    # ---------------------------
    # Checkpointing
    # ---------------------------
    def _checkpoint_metadata(self, clock: TrainingClock, cursor: int) -> dict:
        return {
            "name": self.name_,
            "seed": self.seed,
            "strategy": self.strategy,
            "ensemble_size": self.ensemble_size,
            "ensemble_size_per_channel": self.ensemble_size_per_channel,
            "max_ensemble_size": self.max_ensemble_size,
            "contract_time_ns": self.contract_time_ns,
            "n_channels": self.n_channels_,
            "is_multivariate": self.is_multivariate_,
            "classes": self.classes_.tolist(),
            "n_classifiers": self.n_classifiers_,
            "channel_cursor": int(cursor),
            "rng_state": self._rng.bit_generator.state,
            "elapsed_ns": int(clock.elapsed_ns()),
        }

    def _restore(self, manager: CheckpointManager, clock: TrainingClock) -> int:
        meta = manager.load_metadata()
        if int(meta["n_channels"]) != self.n_channels_:
            raise CheckpointError(
                f"Checkpoint in {manager.directory} has {meta['n_channels']} channel(s), data has {self.n_channels_}."
            )
        counts = [int(v) for v in meta["n_classifiers"]]
        manager.prune(counts)
        self.classifiers_ = manager.load_members(counts, base_estimator=self.base_estimator)

        self._rng = np.random.default_rng(self.seed)
        self._rng.bit_generator.state = meta["rng_state"]
        clock.carry_over(int(meta["elapsed_ns"]))
        logger.info(
            f"[checkpoint] restored {sum(counts)} member(s) from {manager.directory} "
            f"({int(meta['elapsed_ns']) / 1e9:.2f}s already spent)"
        )
        return int(meta["channel_cursor"])

    # ---------------------------
    # Inference
    # ---------------------------
    def predict_proba(self, X) -> np.ndarray:
        self._check_fitted()
        X3 = X.X if isinstance(X, TimeSeriesDataset) else as_channel_first(X)
        if X3.shape[1] != self.n_channels_:
            raise ValueError(f"Expected {self.n_channels_} channel(s), got {X3.shape[1]}.")
        out = np.zeros((X3.shape[0], self.classes_.size), dtype=np.float64)
        for c in range(self.n_channels_):
            Xc = np.ascontiguousarray(X3[:, c, :])
            if self.aggregators_ is not None:
                out += self._aggregator_proba(c, Xc)
            else:
                votes = np.zeros_like(out)
                for m in self.classifiers_[c]:
                    pred = np.asarray(m.predict(Xc), dtype=np.int64)
                    ok = pred >= 0
                    votes[np.nonzero(ok)[0], pred[ok]] += 1.0
                out += self._normalise_votes(votes)
        return out / self.n_channels_

    def predict(self, X) -> np.ndarray:
        return self.classes_[np.argmax(self.predict_proba(X), axis=1)]

    def _aggregator_proba(self, c: int, Xc: np.ndarray) -> np.ndarray:
        agg = self.aggregators_[c]
        out = np.zeros((Xc.shape[0], self.classes_.size), dtype=np.float64)
        if agg is None:
            return out
        out[:, np.asarray(agg.classes_, dtype=np.int64)] = agg.predict_proba(Xc)
        return out

    @staticmethod
    def _normalise_votes(votes: np.ndarray) -> np.ndarray:
        totals = votes.sum(axis=1, keepdims=True)
        return np.divide(votes, totals, out=np.zeros_like(votes), where=totals > 0)

    # ---------------------------
    # Train estimate
    # ---------------------------
    def train_accuracy_estimate(self) -> Tuple[float, np.ndarray, np.ndarray]:
        """
        Ensemble accuracy on the training data. Members that still hold their
        bags vote leave-one-out; members without bags (external estimator)
        and the voting aggregators classify the training series directly.
        Returns: accuracy, predicted labels, class probabilities
        """
        self._check_fitted()
        series, y = self._train_series, self._train_y
        n, C = y.shape[0], self.classes_.size
        proba = np.zeros((n, C), dtype=np.float64)

        for c, Xc in enumerate(series):
            if self.aggregators_ is not None:
                proba += self._aggregator_proba(c, Xc)
                continue
            votes = np.zeros((n, C), dtype=np.float64)
            for m in self.classifiers_[c]:
                if m.bags_ is not None:
                    pred = np.asarray([m.classify_holding_out(i) for i in range(n)], dtype=np.int64)
                else:
                    pred = np.asarray(m.predict(Xc), dtype=np.int64)
                ok = pred >= 0
                votes[np.nonzero(ok)[0], pred[ok]] += 1.0
            proba += self._normalise_votes(votes)
        proba /= len(series)

        pred_idx = np.argmax(proba, axis=1)
        self.ensemble_cv_accuracy_ = float(np.mean(pred_idx == y)) if n else 0.0
        self.ensemble_cv_predictions_ = self.classes_[pred_idx]
        self.ensemble_cv_proba_ = proba
        return self.ensemble_cv_accuracy_, self.ensemble_cv_predictions_, proba

    def write_train_estimate(self, path) -> Path:
        acc, pred, _ = self.train_accuracy_estimate()
        true = self.classes_[self._train_y]
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [f"{self.name_},BOSS,train", self.get_parameters(), f"{acc}"]
        lines += [f"{t},{p}" for t, p in zip(true.tolist(), pred.tolist())]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        logger.info(f"[boss] train estimate acc={acc:.4f} written to {path}")
        return path

    # ---------------------------
    # Introspection
    # ---------------------------
    def get_parameters(self) -> str:
        parts = [
            f"BuildTime,{self.build_time_ms_}",
            f"Strategy,{self.strategy}",
            f"Seed,{self.seed}",
            f"NumClassifiers,{'/'.join(str(v) for v in self.n_classifiers_)}",
        ]
        for c, members in enumerate(self.classifiers_):
            for m in members:
                parts.append(f"channel,{c},{m.describe()}")
        return ",".join(parts)

    def _check_fitted(self):
        if self.classes_ is None or not self.classifiers_:
            raise RuntimeError("BOSS is not fitted. Call fit() first.")
