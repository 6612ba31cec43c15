from __future__ import annotations

from typing import Any, Dict, List, Optional

import numpy as np
from loguru import logger
from sklearn.base import BaseEstimator, ClassifierMixin, clone

from .errors import CheckpointError, ConfigurationError
from .sfa_utils import (
    ALPHABET_SIZE,
    MAX_WORD_LENGTH,
    Bag,
    PackedBags,
    bag_from_words,
    check_word_length,
    compute_breakpoints,
    nearest_neighbour,
    pack_bags,
    sfa_words,
    shorten_words,
)

RECORD_KIND = "boss_individual"
RECORD_VERSION = 1


class BOSSIndividual(ClassifierMixin, BaseEstimator):
    """
    BOSS classifier for one known parameter set
    (word_length, alphabet_size, window_size, normalise).

    Fit:     breakpoints by multiple coefficient binning, sliding-window SFA words
             per training series (kept as a cache for later word shortening),
             numerosity-reduced bags.
    Predict: 1-NN under the BOSS distance, or a cloned scikit-learn estimator
             fit on the word histograms when `base_estimator` is given.
    """

    def __init__(
        self,
        word_length: int = MAX_WORD_LENGTH,
        alphabet_size: int = ALPHABET_SIZE,
        window_size: int = 10,
        normalise: bool = True,
        base_estimator: Optional[Any] = None,
        clean_after_fit: bool = False,
    ):
        self.word_length = word_length
        self.alphabet_size = alphabet_size
        self.window_size = window_size
        self.normalise = normalise
        self.base_estimator = base_estimator
        self.clean_after_fit = clean_after_fit

    def _reset_state(self):
        """Fitted state; created by fit, from_record and rebuild, never by __init__."""
        # leave-one-out train accuracy, only meaningful inside the exhaustive search
        self.accuracy: float = -1.0

        # caches
        self.breakpoints_: Optional[np.ndarray] = None
        self.sfa_words_: Optional[List[np.ndarray]] = None
        self.sfa_word_length_: int = int(self.word_length)
        self.bags_: Optional[List[Bag]] = None
        self._packed: Optional[PackedBags] = None

        # histogram head
        self.vocabulary_: Optional[np.ndarray] = None
        self._vocab_index: Dict[int, int] = {}
        self.estimator_: Optional[Any] = None

    # ---------------------------
    # Fit
    # ---------------------------
    def fit(self, X: np.ndarray, y: np.ndarray) -> "BOSSIndividual":
        X2 = np.ascontiguousarray(X, dtype=np.float64)
        if X2.ndim != 2:
            raise ValueError("BOSSIndividual.fit expects a univariate (n, L) matrix; split channels first.")
        y = np.asarray(y)
        if y.shape[0] != X2.shape[0]:
            raise ValueError(f"X has {X2.shape[0]} instances but y has {y.shape[0]} labels.")
        check_word_length(self.word_length, self.alphabet_size)
        if not 1 <= self.window_size <= X2.shape[1]:
            raise ConfigurationError(
                f"window_size={self.window_size} is outside [1, {X2.shape[1]}] for this series length"
            )

        self._reset_state()
        self.classes_ = np.unique(y)
        self.breakpoints_ = compute_breakpoints(
            X2,
            word_length=self.word_length,
            alphabet_size=self.alphabet_size,
            window_size=self.window_size,
            normalise=self.normalise,
        )
        self.sfa_word_length_ = int(self.word_length)
        self.sfa_words_ = [
            sfa_words(X2[i], self.breakpoints_, window_size=self.window_size, normalise=self.normalise)
            for i in range(X2.shape[0])
        ]
        self.bags_ = [bag_from_words(w, label=y[i]) for i, w in enumerate(self.sfa_words_)]
        self._packed = pack_bags(self.bags_)

        if self.base_estimator is not None:
            self._fit_histogram_head(y)

        if self.clean_after_fit:
            self.release()
        return self

    def _fit_histogram_head(self, y: np.ndarray):
        """Vocabulary in order of first discovery, one column per word, then fit a fresh estimator."""
        vocab: List[int] = []
        index: Dict[int, int] = {}
        for bag in self.bags_:
            for w in bag.words.tolist():
                if w not in index:
                    index[w] = len(vocab)
                    vocab.append(w)
        self.vocabulary_ = np.asarray(vocab, dtype=np.int64)
        self._vocab_index = index

        H = np.vstack([self._histogram(b) for b in self.bags_])
        self.estimator_ = clone(self.base_estimator)
        self.estimator_.fit(H, y)

    # ---------------------------
    # Transform helpers
    # ---------------------------
    def transform_bag(self, series: np.ndarray, label: int = -1) -> Bag:
        """BOSS transform of an unseen series with the learned breakpoints."""
        self._check_fitted()
        words = sfa_words(series, self.breakpoints_[: self.word_length],
                          window_size=self.window_size, normalise=self.normalise)
        return bag_from_words(words, label=label)

    def _histogram(self, bag: Bag) -> np.ndarray:
        """Project a bag onto the stored vocabulary; unseen words are dropped."""
        h = np.zeros(len(self._vocab_index), dtype=np.float64)
        for w, c in zip(bag.words.tolist(), bag.counts.tolist()):
            j = self._vocab_index.get(w)
            if j is not None:
                h[j] = c
        return h

    # ---------------------------
    # Classification
    # ---------------------------
    def classify(self, series: np.ndarray):
        bag = self.transform_bag(series)
        if self.estimator_ is not None:
            return self.estimator_.predict(self._histogram(bag)[None, :])[0]
        return self._label_of(nearest_neighbour(bag, self._packed_bags()))

    def classify_holding_out(self, index: int):
        """
        Classify training instance `index` against every stored bag except its own.
        Used for leave-one-out accuracy without refitting.
        """
        self._check_fitted()
        if self.bags_ is None:
            raise RuntimeError("Bags were released; leave-one-out classification is no longer possible.")
        bag = self.bags_[index]
        if self.estimator_ is not None:
            return self.estimator_.predict(self._histogram(bag)[None, :])[0]
        return self._label_of(nearest_neighbour(bag, self._packed_bags(), skip=index))

    def predict(self, X: np.ndarray) -> np.ndarray:
        self._check_fitted()
        X2 =np.atleast_2d(np.asarray(X, dtype=np.float64))
        if self.estimator_ is not None:
            H = np.vstack([self._histogram(self.transform_bag(x)) for x in X2])
            return self.estimator_.predict(H)
        return np.asarray([self.classify(x) for x in X2])

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        """Columns follow `classes_`. 1-NN gives a one-hot row per series."""
        self._check_fitted()
        X2 = np.atleast_2d(np.asarray(X, dtype=np.float64))
        if self.estimator_ is not None:
            H = np.vstack([self._histogram(self.transform_bag(x)) for x in X2])
            proba = self.estimator_.predict_proba(H)
            out = np.zeros((X2.shape[0], self.classes_.size), dtype=np.float64)
            cols = np.searchsorted(self.classes_, self.estimator_.classes_)
            out[:, cols] = proba
            return out
        pred = self.predict(X2)
        out = np.zeros((X2.shape[0], self.classes_.size), dtype=np.float64)
        for i, p in enumerate(pred):
            j = int(np.searchsorted(self.classes_, p))
            if j < self.classes_.size and self.classes_[j] == p:
                out[i, j] = 1.0
        return out

    # ---------------------------
    # Word-length search support
    # ---------------------------
    def rebuild_at_word_length(self, new_length: int) -> "BOSSIndividual":
        """
        New classifier with bags rebuilt from the cached SFA words truncated to
        `new_length` letters. Returns self when the length is unchanged.
        """
        if new_length == self.word_length:
            return self
        if new_length > self.sfa_word_length_:
            raise ConfigurationError(
                f"Cannot incrementally INCREASE word length, current: {self.word_length}, requested: {new_length}"
            )
        if new_length < 2:
            raise ConfigurationError(f"Invalid word length requested, current: {self.word_length}, requested: {new_length}")
        if self.sfa_words_ is None:
            raise ConfigurationError("SFA word cache was released; cannot shorten this classifier.")

        other = BOSSIndividual(
            word_length=new_length,
            alphabet_size=self.alphabet_size,
            window_size=self.window_size,
            normalise=self.normalise,
            base_estimator=self.base_estimator,
            clean_after_fit=self.clean_after_fit,
        )
        other._reset_state()
        other.classes_ = self.classes_
        other.breakpoints_ = self.breakpoints_
        other.sfa_words_ = self.sfa_words_
        other.sfa_word_length_ = self.sfa_word_length_
        other.bags_ = [
            bag_from_words(shorten_words(w, self.sfa_word_length_, new_length, self.alphabet_size), label=b.label)
            for w, b in zip(self.sfa_words_, self.bags_)
        ]
        other._packed = pack_bags(other.bags_)
        if self.estimator_ is not None:
            other._fit_histogram_head(np.asarray([b.label for b in other.bags_]))
        return other

    def release(self):
        """Drop the SFA word cache (no more shortening); bags too when a base estimator holds the model."""
        self.sfa_words_ = None
        if self.estimator_ is not None:
            self.bags_ = None
            self._packed = None

    # ---------------------------
    # Introspection
    # ---------------------------
    @property
    def configuration(self):
        return (int(self.word_length), int(self.alphabet_size), int(self.window_size), bool(self.normalise))

    def describe(self) -> str:
        return (f"windowSize,{self.window_size},wordLength,{self.word_length},"
                f"alphabetSize,{self.alphabet_size},norm,{str(bool(self.normalise)).lower()}")

    # ---------------------------
    # Checkpoint record
    # ---------------------------
    def to_record(self) -> Dict[str, np.ndarray]:
        """
        Explicit field list for checkpointing. Optional blocks (bags, SFA word
        cache, vocabulary) are present only while the classifier still holds them.
        The fitted base estimator, if any, is persisted separately.
        """
        self._check_fitted()
        rec: Dict[str, np.ndarray] = {
            "kind": np.array(RECORD_KIND),
            "format_version": np.array(RECORD_VERSION, dtype=np.int64),
            "params": np.array(
                [self.word_length, self.alphabet_size, self.window_size, int(bool(self.normalise)),
                 self.sfa_word_length_, int(bool(self.clean_after_fit))],
                dtype=np.int64,
            ),
            "accuracy": np.array(self.accuracy, dtype=np.float64),
            "classes": np.asarray(self.classes_),
            "breakpoints": np.asarray(self.breakpoints_, dtype=np.float64),
        }
        if self.bags_ is not None:
            packed = self._packed_bags()
            rec["bag_words"] = packed.words
            rec["bag_counts"] = packed.counts
            rec["bag_offsets"] = packed.offsets
            rec["bag_labels"] = np.asarray(packed.labels)
        if self.sfa_words_ is not None:
            sizes = np.array([w.shape[0] for w in self.sfa_words_], dtype=np.int64)
            offsets = np.zeros(sizes.size + 1, dtype=np.int64)
            np.cumsum(sizes, out=offsets[1:])
            rec["sfa_words"] = np.concatenate(self.sfa_words_) if self.sfa_words_ else np.zeros(0, dtype=np.int64)
            rec["sfa_offsets"] = offsets
        if self.vocabulary_ is not None:
            rec["vocabulary"] = self.vocabulary_
        return rec

    @classmethod
    def from_record(cls, rec, *, base_estimator=None, estimator=None) -> "BOSSIndividual":
        kind = str(rec["kind"]) if "kind" in rec else ""
        if kind != RECORD_KIND:
            raise CheckpointError(f"Record is not a {RECORD_KIND} (kind={kind!r}).")
        version = int(rec["format_version"])
        if version != RECORD_VERSION:
            raise CheckpointError(f"Unsupported {RECORD_KIND} format_version {version} (expected {RECORD_VERSION}).")

        word_length, alphabet_size, window_size, normalise, sfa_len, clean = (int(v) for v in rec["params"])
        indiv = cls(
            word_length=word_length,
            alphabet_size=alphabet_size,
            window_size=window_size,
            normalise=bool(normalise),
            base_estimator=base_estimator,
            clean_after_fit=bool(clean),
        )
        indiv._reset_state()
        indiv.accuracy = float(rec["accuracy"])
        indiv.classes_ = np.asarray(rec["classes"])
        indiv.breakpoints_ = np.asarray(rec["breakpoints"], dtype=np.float64)
        indiv.sfa_word_length_ = sfa_len

        if "bag_words" in rec:
            words = np.asarray(rec["bag_words"], dtype=np.int64)
            counts = np.asarray(rec["bag_counts"], dtype=np.int64)
            offsets = np.asarray(rec["bag_offsets"], dtype=np.int64)
            labels = np.asarray(rec["bag_labels"])
            indiv.bags_ = [
                Bag(words[offsets[i]:offsets[i + 1]], counts[offsets[i]:offsets[i + 1]], labels[i].item())
                for i in range(offsets.size - 1)
            ]
            indiv._packed = PackedBags(words, counts, offsets, labels)
        if "sfa_words" in rec:
            sw = np.asarray(rec["sfa_words"], dtype=np.int64)
            so = np.asarray(rec["sfa_offsets"], dtype=np.int64)
            indiv.sfa_words_ = [sw[so[i]:so[i + 1]] for i in range(so.size - 1)]
        if "vocabulary" in rec:
            indiv.vocabulary_ = np.asarray(rec["vocabulary"], dtype=np.int64)
            indiv._vocab_index = {int(w): j for j, w in enumerate(indiv.vocabulary_)}
            if estimator is None:
                raise CheckpointError("Record has a word vocabulary but no fitted estimator was supplied.")
            indiv.estimator_ = estimator
        return indiv

    # -------------
    # internals
    # -------------
    def _packed_bags(self) -> PackedBags:
        if self._packed is None:
            if self.bags_ is None:
                raise RuntimeError("No bags stored; fit() first.")
            self._packed = pack_bags(self.bags_)
        return self._packed

    def _label_of(self, nn: int):
        if nn < 0:
            logger.debug("[boss] no neighbour available (single stored bag held out)")
            return -1
        return self.bags_[nn].label

    def _check_fitted(self):
        if getattr(self, "breakpoints_", None) is None:
            raise RuntimeError("BOSSIndividual is not fitted. Call fit() first.")
