from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError


# ---------------------------
# Dataset view
# ---------------------------

@dataclass
class TimeSeriesDataset:
    """
    Labeled collection of equal-length series.

      X           : (n, V, T) float64, one row per instance, V channels
      y           : (n,) int64 class indices into `classes`
      classes     : original class labels
      name        : relation name (used to name checkpoint folders)
      class_index : position of the class column in the tabular source
      n_attributes: number of columns in the tabular source (T*V + 1)
    """
    X: np.ndarray
    y: np.ndarray
    classes: np.ndarray
    name: str = "dataset"
    class_index: int = -1
    n_attributes: int = -1

    @property
    def n_instances(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_channels(self) -> int:
        return int(self.X.shape[1])

    @property
    def series_length(self) -> int:
        return int(self.X.shape[2])

    @property
    def is_multivariate(self) -> bool:
        return self.n_channels > 1

    def channel(self, c: int) -> np.ndarray:
        return self.X[:, c, :]

    def check_class_last(self):
        if self.class_index != self.n_attributes - 1:
            raise ConfigurationError(
                f"Class attribute not set as last attribute in dataset '{self.name}' "
                f"(class_index={self.class_index}, n_attributes={self.n_attributes})."
            )

    @classmethod
    def from_arrays(cls, X, y, *, name: str = "dataset") -> "TimeSeriesDataset":
        """(n,T) or (n,V,T) values plus labels of any hashable type."""
        X3 = as_channel_first(X)
        labels = np.asarray(y)
        if labels.shape[0] != X3.shape[0]:
            raise ValueError(f"X has {X3.shape[0]} instances but y has {labels.shape[0]} labels.")
        classes, inv = np.unique(labels, return_inverse=True)
        n_attributes = X3.shape[1] * X3.shape[2] + 1
        return cls(X3, inv.astype(np.int64), classes, name=name,
                   class_index=n_attributes - 1, n_attributes=n_attributes)

    @classmethod
    def from_table(cls, table, *, class_index: int = -1, name: str = "dataset") -> "TimeSeriesDataset":
        """
        Univariate tabular source: one row per instance, one numeric column per
        time step plus the class column at `class_index` (negative = from the end).
        The class position is recorded as-is; fitting rejects a non-final class column.
        """
        T = np.asarray(table)
        if T.ndim != 2 or T.shape[1] < 2:
            raise ValueError("Expected a 2D table with at least one value column and a class column.")
        n_attributes = T.shape[1]
        ci = class_index if class_index >= 0 else n_attributes + class_index
        if not 0 <= ci < n_attributes:
            raise ValueError(f"class_index {class_index} out of range for {n_attributes} columns.")
        values = np.delete(T, ci, axis=1).astype(np.float64)
        classes, inv = np.unique(T[:, ci], return_inverse=True)
        return cls(values[:, None, :], inv.astype(np.int64), classes, name=name,
                   class_index=ci, n_attributes=n_attributes)


def as_channel_first(X) -> np.ndarray:
    """(T,) -> (1,1,T); (n,T) -> (n,1,T); (n,V,T) unchanged. Always float64 and contiguous."""
    A = np.asarray(X, dtype=np.float64)
    if A.ndim == 1:
        A = A[None, None, :]
    elif A.ndim == 2:
        A = A[:, None, :]
    elif A.ndim != 3:
        raise ValueError("Expected (T,), (n,T) or (n,V,T) array of series.")
    return np.ascontiguousarray(A)


# ---------------------------
# UCR/UEA loader (sktime)
# ---------------------------

def _nested_to_vt(X_nested) -> np.ndarray:
    """
    Nested sktime frame -> dense (n, V, T). Every cell must hold a series of the
    same length; unequal lengths are rejected rather than padded.
    """
    import pandas as pd
    if not isinstance(X_nested, pd.DataFrame):
        X_nested = pd.DataFrame(X_nested)

    n, V = X_nested.shape
    lengths = {int(np.asarray(X_nested.iat[i, j]).size) for i in range(n) for j in range(V)}
    if len(lengths) != 1:
        raise ValueError(f"Unequal length series are not supported (lengths={sorted(lengths)[:5]}...).")
    T = lengths.pop()

    out = np.empty((n, V, T), dtype=np.float64)
    for i in range(n):
        for j in range(V):
            out[i, j, :] = np.asarray(X_nested.iat[i, j], dtype=np.float64).ravel()
    return out


def load_ucr_uea_sktime(name: str) -> Tuple[TimeSeriesDataset, TimeSeriesDataset]:
    """
    Fetch the official UCR/UEA train/test splits via sktime.
    Test labels are encoded against the train classes.
    Returns: train, test
    """
    from sktime.datasets import load_UCR_UEA_dataset

    X_train_nested, y_train = load_UCR_UEA_dataset(name, split="train", return_X_y=True)
    X_test_nested, y_test = load_UCR_UEA_dataset(name, split="test", return_X_y=True)

    train = TimeSeriesDataset.from_arrays(_nested_to_vt(X_train_nested), np.asarray(y_train), name=name)
    class_to_idx = {c: i for i, c in enumerate(train.classes)}
    unknown = set(np.asarray(y_test).tolist()) - set(class_to_idx)
    if unknown:
        raise ValueError(f"Test split has labels unseen in train: {sorted(unknown)}")

    X_test = _nested_to_vt(X_test_nested)
    y_idx = np.array([class_to_idx[v] for v in np.asarray(y_test)], dtype=np.int64)
    n_attributes = X_test.shape[1] * X_test.shape[2] + 1
    test = TimeSeriesDataset(X_test, y_idx, train.classes, name=name,
                             class_index=n_attributes - 1, n_attributes=n_attributes)
    return train, test


def split_channels(X: np.ndarray) -> Sequence[np.ndarray]:
    """(n,V,T) -> V contiguous (n,T) matrices."""
    X3 = as_channel_first(X)
    return [np.ascontiguousarray(X3[:, c, :]) for c in range(X3.shape[1])]


def make_synthetic_dataset(
    n_per_class: int = 10,
    length: int = 50,
    *,
    n_channels: int = 1,
    noise: float = 0.3,
    seed: Optional[int] = 0,
    name: str = "Synthetic",
) -> TimeSeriesDataset:
    """Two-class toy problem: low-frequency sine vs. higher-frequency square wave, plus noise."""
    rng = np.random.default_rng(seed)
    t = np.linspace(0.0, 1.0, length)
    X = np.empty((2 * n_per_class, n_channels, length), dtype=np.float64)
    y = np.empty(2 * n_per_class, dtype=np.int64)
    for i in range(2 * n_per_class):
        cls = i % 2
        for c in range(n_channels):
            phase = rng.uniform(0, 2 * np.pi)
            if cls == 0:
                base = np.sin(2 * np.pi * 2 * t + phase)
            else:
                base = np.sign(np.sin(2 * np.pi * 5 * t + phase))
            X[i, c] = base + noise * rng.standard_normal(length)
        y[i] = cls
    return TimeSeriesDataset.from_arrays(X, y, name=name)
