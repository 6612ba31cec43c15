from __future__ import annotations

import enum
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import joblib
import numpy as np
from loguru import logger
from sklearn.base import clone
from sklearn.metrics import accuracy_score
from sklearn.model_selection import StratifiedKFold, cross_val_predict

from .boss_functions import BOSSIndividual
from .errors import CheckpointError


# =========================================================
#  Time budget
# =========================================================

class TimeLimit(enum.Enum):
    """Symbolic contract units, value in nanoseconds."""
    MINUTE = 60 * 10**9
    HOUR = 3600 * 10**9
    DAY = 86400 * 10**9


def to_nanoseconds(time_limit, amount: Optional[int] = None) -> int:
    """
    Normalise a training budget to nanoseconds:
      to_nanoseconds(5 * 10**9)             -> raw duration
      to_nanoseconds(TimeLimit.MINUTE, 2)   -> unit x count
    """
    if isinstance(time_limit, TimeLimit):
        if amount is None:
            amount = 1
        return int(time_limit.value) * int(amount)
    if isinstance(time_limit, str):
        return to_nanoseconds(TimeLimit[time_limit.upper()], amount)
    if amount is not None:
        raise ValueError("amount is only valid together with a TimeLimit unit")
    ns = int(time_limit)
    if ns < 0:
        raise ValueError(f"Time limit must be non-negative, got {ns}")
    return ns


class TrainingClock:
    """
    Monotonic training clock. Time spent writing checkpoints is excluded and
    time already consumed by a previous (checkpointed) run is carried over.
    """

    def __init__(self, consumed_ns: int = 0):
        self.start_ns = time.monotonic_ns()
        self.consumed_ns = int(consumed_ns)
        self.checkpoint_overhead_ns = 0

    def elapsed_ns(self) -> int:
        return self.consumed_ns + (time.monotonic_ns() - self.start_ns) - self.checkpoint_overhead_ns

    def add_overhead(self, ns: int):
        self.checkpoint_overhead_ns += int(ns)

    def carry_over(self, consumed_ns: int):
        self.consumed_ns = int(consumed_ns)


# =========================================================
#  Checkpoint records
# =========================================================

METADATA_KIND = "boss_ensemble"
METADATA_VERSION = 1
METADATA_FILE = "BOSS.json"
METADATA_TEMP_FILE = "RandomBOSStemp.json"


def checkpoint_folder_name(name: str, seed: int, strategy_tag: str) -> str:
    return f"{name}{seed}{strategy_tag}BOSSser"


class CheckpointManager:
    """
    Owns one checkpoint folder:
      BOSSIndividual<channel>-<position>.npz       one per retained member
      BOSSIndividual<channel>-<position>.joblib    fitted base estimator, if the member has one
      BOSS.json                                    ensemble metadata (scalars + counts)
    Metadata is written to a temp file and swapped in with os.replace.
    """

    def __init__(self, directory, *, cleanup: bool = True):
        self.directory = Path(directory)
        self.cleanup_files = bool(cleanup)

    @property
    def metadata_path(self) -> Path:
        return self.directory / METADATA_FILE

    def member_path(self, channel: int, position: int) -> Path:
        return self.directory / f"BOSSIndividual{channel}-{position}.npz"

    def estimator_path(self, channel: int, position: int) -> Path:
        return self.directory / f"BOSSIndividual{channel}-{position}.joblib"

    def exists(self) -> bool:
        return self.metadata_path.is_file()

    # ---------------------------
    # Save
    # ---------------------------
    def save(
        self,
        metadata: Dict[str, Any],
        *,
        member: Optional[BOSSIndividual] = None,
        channel: int = -1,
        position: int = -1,
        members: Optional[Sequence[Sequence[BOSSIndividual]]] = None,
    ) -> int:
        """
        Persist the newest member (if given), any retained member in `members`
        whose file is missing after an earlier skipped write, then the metadata.
        Metadata is only swapped in once every member it references is on disk.
        I/O failures are logged and skipped. Returns the nanoseconds spent.
        """
        t0 = time.monotonic_ns()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            if members is not None:
                for c, row in enumerate(members):
                    for i, m in enumerate(row):
                        if (c, i) != (channel, position) and not self.member_path(c, i).is_file():
                            logger.warning(f"[checkpoint] rewriting missing BOSSIndividual{c}-{i}")
                            self._write_member(m, c, i)
            if member is not None:
                self._write_member(member, channel, position)

            record = dict(metadata)
            record["kind"] = METADATA_KIND
            record["format_version"] = METADATA_VERSION
            tmp = self.directory / METADATA_TEMP_FILE
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(record, f)
            os.replace(tmp, self.metadata_path)
        except OSError:
            logger.exception(f"[checkpoint] serialisation to {self.directory} FAILED; continuing without it")
        return time.monotonic_ns() - t0

    def _write_member(self, member: BOSSIndividual, channel: int, position: int):
        """Estimator sidecar first, then the record via a temp file, so a record on disk is always complete."""
        if member.estimator_ is not None:
            joblib.dump(member.estimator_, self.estimator_path(channel, position))
        path = self.member_path(channel, position)
        tmp = path.with_name(path.name + ".tmp")
        with tmp.open("wb") as f:
            np.savez(f, **member.to_record())
        os.replace(tmp, path)

    # ---------------------------
    # Load
    # ---------------------------
    def load_metadata(self) -> Dict[str, Any]:
        with self.metadata_path.open("r", encoding="utf-8") as f:
            record = json.load(f)
        if not isinstance(record, dict) or record.get("kind") != METADATA_KIND:
            raise CheckpointError(f"{self.metadata_path} is not a {METADATA_KIND} record.")
        if record.get("format_version") != METADATA_VERSION:
            raise CheckpointError(
                f"Unsupported {METADATA_KIND} format_version {record.get('format_version')} "
                f"(expected {METADATA_VERSION})."
            )
        return record

    def load_member(self, channel: int, position: int, *, base_estimator=None) -> BOSSIndividual:
        est_path = self.estimator_path(channel, position)
        estimator = joblib.load(est_path) if est_path.is_file() else None
        with np.load(self.member_path(channel, position), allow_pickle=False) as rec:
            return BOSSIndividual.from_record(rec, base_estimator=base_estimator, estimator=estimator)

    def load_members(self, counts: Sequence[int], *, base_estimator=None) -> List[List[BOSSIndividual]]:
        members: List[List[BOSSIndividual]] = []
        for c, n in enumerate(counts):
            row = []
            for i in range(int(n)):
                logger.debug(f"[checkpoint] loading BOSSIndividual{c}-{i}")
                row.append(self.load_member(c, i, base_estimator=base_estimator))
            members.append(row)
        return members

    # ---------------------------
    # Cleanup
    # ---------------------------
    def prune(self, counts: Sequence[int]) -> int:
        """Remove member files the metadata does not reference (a member written before a failed metadata swap)."""
        if not self.directory.is_dir():
            return 0
        removed = 0
        for p in sorted(self.directory.glob("BOSSIndividual*.tmp")):
            p.unlink()
        for p in sorted(self.directory.glob("BOSSIndividual*-*.*")):
            stem = p.stem[len("BOSSIndividual"):]
            try:
                c, i = (int(v) for v in stem.split("-", 1))
            except ValueError:
                continue
            if c >= len(counts) or i >= int(counts[c]):
                logger.warning(f"[checkpoint] removing unreferenced {p.name}")
                p.unlink()
                removed += 1
        return removed

    def cleanup(self):
        """Delete every member file, the metadata, then the folder itself."""
        if not self.directory.is_dir():
            return
        try:
            for p in sorted(self.directory.iterdir()):
                if p.name != METADATA_FILE:
                    p.unlink()
            if self.metadata_path.exists():
                self.metadata_path.unlink()
            self.directory.rmdir()
        except OSError:
            logger.exception(f"[checkpoint] could not remove {self.directory}")


# =========================================================
#  Cross-validated weighted voting
# =========================================================

class CrossValidatedWeightedVoting:
    """
    Weighted vote over a fixed set of member classifiers. Each member's weight is
    its stratified k-fold accuracy on the training data raised to `alpha`; members
    are then refit on all of it.
    """

    def __init__(self, *, n_folds: int = 10, alpha: float = 4.0, seed: int = 0):
        self.n_folds = int(n_folds)
        self.alpha = float(alpha)
        self.seed = int(seed)
        self.members: List[Any] = []
        self.weights_: Optional[np.ndarray] = None
        self.cv_accuracies_: Optional[np.ndarray] = None
        self.classes_: Optional[np.ndarray] = None

    def set_members(self, members: Sequence[Any]):
        self.members = list(members)

    def fit(self, X: np.ndarray, y: np.ndarray) -> "CrossValidatedWeightedVoting":
        if not self.members:
            raise ValueError("No members set; call set_members() before fit().")
        X2 = np.asarray(X, dtype=np.float64)
        y = np.asarray(y)
        self.classes_ = np.unique(y)

        _, per_class = np.unique(y, return_counts=True)
        folds = min(self.n_folds, int(per_class.min()))

        accs = np.ones(len(self.members), dtype=np.float64)
        for j, m in enumerate(self.members):
            if folds >= 2:
                cv = StratifiedKFold(n_splits=folds, shuffle=True, random_state=self.seed)
                oof = cross_val_predict(clone(m), X2, y, cv=cv)
                accs[j] = accuracy_score(y, oof)
            m.fit(X2, y)
            logger.debug(f"[voting] member {j} cv_acc={accs[j]:.4f}")
        if folds < 2:
            logger.warning(f"[voting] smallest class has {int(per_class.min())} instance(s); using uniform weights")

        self.cv_accuracies_ = accs
        self.weights_ = np.power(accs, self.alpha)
        return self

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        if self.weights_ is None:
            raise RuntimeError("CrossValidatedWeightedVoting is not fitted.")
        X2 = np.atleast_2d(np.asarray(X, dtype=np.float64))
        out = np.zeros((X2.shape[0], self.classes_.size), dtype=np.float64)
        for w, m in zip(self.weights_, self.members):
            proba = m.predict_proba(X2)
            cols = np.searchsorted(self.classes_, m.classes_)
            out[:, cols] += w * proba
        totals = out.sum(axis=1, keepdims=True)
        uniform = np.full_like(out, 1.0 / self.classes_.size)
        return np.where(totals > 0, out / np.where(totals > 0, totals, 1.0), uniform)

    def predict(self, X: np.ndarray) -> np.ndarray:
        return self.classes_[np.argmax(self.predict_proba(X), axis=1)]
