from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
from numba import njit

from .errors import ConfigurationError


# ---------------------------
# Fixed BOSS parameters
# ---------------------------

WORD_LENGTHS: Tuple[int, ...] = (16, 14, 12, 10, 8)
MAX_WORD_LENGTH = WORD_LENGTHS[0]
ALPHABET_SIZE = 4
MIN_WINDOW = 10


def letter_bits_for(alphabet_size: int) -> int:
    """Bits needed per letter (alphabet 4 -> 2)."""
    return max(1, int(alphabet_size - 1).bit_length())


def check_word_length(word_length: int, alphabet_size: int = ALPHABET_SIZE):
    if word_length < 2 or word_length % 2 != 0:
        raise ConfigurationError(f"word_length must be an even number >= 2, got {word_length}")
    if word_length * letter_bits_for(alphabet_size) > 62:
        raise ConfigurationError(
            f"word_length={word_length} with alphabet_size={alphabet_size} does not fit a 64-bit word"
        )


# ---------------------------
# Numba primitives
# ---------------------------

@njit
def _window_std(window: np.ndarray) -> float:
    """Population std of one window; 1.0 for a constant window."""
    n = window.shape[0]
    s = 0.0
    sq = 0.0
    for i in range(n):
        s += window[i]
        sq += window[i] * window[i]
    mean = s / n
    var = sq / n - mean * mean
    if var > 0:
        return math.sqrt(var)
    return 1.0


@njit
def _dft_unnormed(window: np.ndarray, word_length: int, normalise: bool) -> np.ndarray:
    """
    First word_length//2 DFT coefficients as { re_0, im_0, re_1, im_1, ... }.
    Frequency 0 is skipped when normalising. Values are accumulated relative to
    window[0], which leaves every non-DC coefficient of a constant window at exactly 0.
    """
    n = window.shape[0]
    n_coeffs = word_length // 2
    start = 1 if normalise else 0
    ref = window[0]
    out = np.zeros(2 * n_coeffs)
    for k in range(start, start + n_coeffs):
        re = 0.0
        im = 0.0
        for t in range(n):
            v = window[t] - ref
            ang = 2.0 * math.pi * t * k / n
            re += v * math.cos(ang)
            im -= v * math.sin(ang)
        if k == 0:
            re += n * ref
        out[(k - start) * 2] = re
        out[(k - start) * 2 + 1] = im
    return out


@njit
def _disjoint_dfts(X: np.ndarray, window_size: int, word_length: int, normalise: bool) -> np.ndarray:
    """
    (n, L) -> (n * ceil(L/w), word_length) normalised coefficients of the disjoint
    windows of every series. The last window of a series is anchored to its end.
    """
    n, L = X.shape
    n_windows = (L + window_size - 1) // window_size
    inv_sqrt_w = 1.0 / math.sqrt(window_size)
    n_out = 2 * (word_length // 2)
    out = np.empty((n * n_windows, n_out))
    for i in range(n):
        for w in range(n_windows):
            offset = min(w * window_size, L - window_size)
            win = X[i, offset:offset + window_size]
            dft = _dft_unnormed(win, word_length, normalise)
            f = inv_sqrt_w / _window_std(win)
            row = i * n_windows + w
            for j in range(n_out):
                out[row, j] = dft[j] * f
    return out


@njit
def _moving_transform(series: np.ndarray, window_size: int, word_length: int, normalise: bool) -> np.ndarray:
    """
    Momentary Fourier transform: one normalised coefficient vector per sliding
    window (step 1). Seeded by a full DFT at offset 0, then one complex
    multiplication per coefficient per step. Window means/stds are kept with a
    running sum and sum of squares.
    """
    L = series.shape[0]
    l = 2 * (word_length // 2)
    start_offset = 2 if normalise else 0

    phis = np.empty(l)
    for u in range(0, l, 2):
        u_half = -(u + start_offset) / 2.0
        phis[u] = math.cos(2.0 * math.pi * u_half / window_size)
        phis[u + 1] = -math.sin(2.0 * math.pi * u_half / window_size)

    end = max(1, L - window_size + 1)
    stds = np.zeros(end)
    r = 1.0 / window_size
    s = 0.0
    sq = 0.0
    for ww in range(window_size):
        s += series[ww]
        sq += series[ww] * series[ww]
    mean = s * r
    buf = sq * r - mean * mean
    stds[0] = math.sqrt(buf) if buf > 0 else 0.0
    for w in range(1, end):
        a = series[w + window_size - 1]
        b = series[w - 1]
        s += a - b
        sq += a * a - b * b
        mean = s * r
        buf = sq * r - mean * mean
        stds[w] = math.sqrt(buf) if buf > 0 else 0.0

    inv_sqrt_w = 1.0 / math.sqrt(window_size)
    out = np.empty((end, l))
    mft = _dft_unnormed(series[:window_size], word_length, normalise)
    for t in range(end):
        if t > 0:
            delta = series[t + window_size - 1] - series[t - 1]
            for k in range(0, l, 2):
                re1 = mft[k] + delta
                im1 = mft[k + 1]
                mft[k] = re1 * phis[k] - im1 * phis[k + 1]
                mft[k + 1] = re1 * phis[k + 1] + phis[k] * im1
        f = (1.0 / stds[t] if stds[t] > 0 else 1.0) * inv_sqrt_w
        for k in range(l):
            out[t, k] = mft[k] * f
    return out


@njit
def _words_for(coeffs: np.ndarray, breakpoints: np.ndarray, letter_bits: int) -> np.ndarray:
    m, n_letters = coeffs.shape
    alphabet = breakpoints.shape[1]
    out = np.empty(m, dtype=np.int64)
    for i in range(m):
        word = 0
        for l in range(n_letters):
            bp = 0
            while bp < alphabet - 1 and coeffs[i, l] > breakpoints[l, bp]:
                bp += 1
            word = (word << letter_bits) | bp
        out[i] = word
    return out


@njit
def _numerosity_reduce(words: np.ndarray) -> np.ndarray:
    """Drop every word equal to its immediate predecessor. The first word always stays."""
    n = words.shape[0]
    keep = np.empty(n, dtype=np.int64)
    m = 0
    for i in range(n):
        if i == 0 or words[i] != words[i - 1]:
            keep[m] = words[i]
            m += 1
    return keep[:m]


@njit
def _boss_distance(a_words: np.ndarray, a_counts: np.ndarray,
                   b_words: np.ndarray, b_counts: np.ndarray, best: float) -> float:
    """
    Directional distance FROM a TO b over the words of a only (b sorted).
    Returns inf as soon as the partial sum exceeds `best`.
    """
    dist = 0.0
    nb = b_words.shape[0]
    for i in range(a_words.shape[0]):
        w = a_words[i]
        j = np.searchsorted(b_words, w)
        vb = 0
        if j < nb and b_words[j] == w:
            vb = b_counts[j]
        d = a_counts[i] - vb
        dist += d * d
        if dist > best:
            return np.inf
    return dist


@njit
def _nearest_neighbour(q_words: np.ndarray, q_counts: np.ndarray,
                       words: np.ndarray, counts: np.ndarray, offsets: np.ndarray, skip: int) -> int:
    """Index of the 1-NN bag (strict <, first stored wins ties); -1 if there is no candidate."""
    best = np.inf
    nn = -1
    for i in range(offsets.shape[0] - 1):
        if i == skip:
            continue
        lo = offsets[i]
        hi = offsets[i + 1]
        d = _boss_distance(q_words, q_counts, words[lo:hi], counts[lo:hi], best)
        if d < best:
            best = d
            nn = i
    return nn


# ---------------------------
# Bags
# ---------------------------

@dataclass
class Bag:
    """Histogram of SFA words for one series: sorted unique codes + counts + class label."""
    words: np.ndarray     # (k,) int64, ascending
    counts: np.ndarray    # (k,) int64, > 0
    label: Any = -1

    def __len__(self) -> int:
        return int(self.words.shape[0])

    def as_dict(self) -> Dict[int, int]:
        return {int(w): int(c) for w, c in zip(self.words, self.counts)}

    def get(self, word: int) -> int:
        j = int(np.searchsorted(self.words, word))
        if j < self.words.shape[0] and self.words[j] == word:
            return int(self.counts[j])
        return 0


@dataclass
class PackedBags:
    """All bags of one configuration concatenated, for the compiled 1-NN search."""
    words: np.ndarray     # (sum k_i,)
    counts: np.ndarray    # (sum k_i,)
    offsets: np.ndarray   # (n+1,)
    labels: np.ndarray    # (n,)

    def __len__(self) -> int:
        return int(self.offsets.shape[0] - 1)


def pack_bags(bags: Sequence[Bag]) -> PackedBags:
    sizes = np.array([len(b) for b in bags], dtype=np.int64)
    offsets = np.zeros(len(bags) + 1, dtype=np.int64)
    np.cumsum(sizes, out=offsets[1:])
    if bags:
        words = np.concatenate([b.words for b in bags]).astype(np.int64, copy=False)
        counts = np.concatenate([b.counts for b in bags]).astype(np.int64, copy=False)
    else:
        words = np.zeros(0, dtype=np.int64)
        counts = np.zeros(0, dtype=np.int64)
    labels = np.array([b.label for b in bags])
    return PackedBags(words, counts, offsets, labels)


def bag_from_words(words: np.ndarray, label: Any = -1, *, numerosity_reduction: bool = True) -> Bag:
    w = np.ascontiguousarray(words, dtype=np.int64)
    if numerosity_reduction:
        w = _numerosity_reduce(w)
    uniq, counts = np.unique(w, return_counts=True)
    return Bag(uniq.astype(np.int64), counts.astype(np.int64), label)


def boss_distance(a: Bag, b: Bag, best_so_far: float = np.inf) -> float:
    """
    BOSS distance FROM a TO b: sum over words of a of (count_a - count_b)^2.
    Words only present in b are ignored, so d(a,b) != d(b,a) in general.
    Returns inf once the running sum exceeds best_so_far.
    """
    return float(_boss_distance(a.words, a.counts, b.words, b.counts, float(best_so_far)))


def nearest_neighbour(query: Bag, packed: PackedBags, skip: int = -1) -> int:
    return int(_nearest_neighbour(query.words, query.counts, packed.words, packed.counts,
                                  packed.offsets, int(skip)))


# ---------------------------
# Transform steps
# ---------------------------

def disjoint_windows(series: np.ndarray, window_size: int) -> np.ndarray:
    """ceil(L/w) non-overlapping windows; the last one is anchored to the series end."""
    x = np.asarray(series, dtype=np.float64).ravel()
    L = x.shape[0]
    if window_size < 1 or window_size > L:
        raise ConfigurationError(f"window_size must be in [1, {L}], got {window_size}")
    n_windows = -(-L // window_size)
    offsets = [min(w * window_size, L - window_size) for w in range(n_windows)]
    return np.stack([x[o:o + window_size] for o in offsets])


def window_dft(window: np.ndarray, word_length: int, normalise: bool) -> np.ndarray:
    """Normalised coefficients of a single window (scaled by 1/sqrt(w) and 1/std)."""
    x = np.ascontiguousarray(window, dtype=np.float64).ravel()
    return _dft_unnormed(x, int(word_length), bool(normalise)) / (math.sqrt(x.shape[0]) * _window_std(x))


def compute_breakpoints(
    X: np.ndarray,
    *,
    word_length: int,
    alphabet_size: int = ALPHABET_SIZE,
    window_size: int,
    normalise: bool,
) -> np.ndarray:
    """
    Multiple coefficient binning: equi-depth breakpoints per letter from the
    disjoint-window coefficients of every training series.
    Returns (word_length, alphabet_size); last column is +inf, rows ascending.
    """
    X2 = np.ascontiguousarray(X, dtype=np.float64)
    if X2.ndim != 2 or X2.shape[0] == 0:
        raise ValueError("compute_breakpoints needs a non-empty (n, L) training matrix.")
    if window_size < 1 or window_size > X2.shape[1]:
        raise ConfigurationError(f"window_size must be in [1, {X2.shape[1]}], got {window_size}")
    check_word_length(word_length, alphabet_size)

    dfts = _disjoint_dfts(X2, int(window_size), int(word_length), bool(normalise))
    # two decimals, half-up, to keep numerical noise out of the bins
    pool = np.floor(dfts * 100.0 + 0.5) / 100.0
    pool.sort(axis=0)

    total = pool.shape[0]
    depth = total / float(alphabet_size)
    breakpoints = np.empty((word_length, alphabet_size), dtype=np.float64)
    bin_index = 0.0
    for bp in range(alphabet_size - 1):
        bin_index += depth
        breakpoints[:, bp] = pool[int(bin_index), :]
    breakpoints[:, alphabet_size - 1] = np.inf
    return breakpoints


def moving_transform(series: np.ndarray, *, window_size: int, word_length: int, normalise: bool) -> np.ndarray:
    x = np.ascontiguousarray(series, dtype=np.float64).ravel()
    if window_size < 1 or window_size > x.shape[0]:
        raise ConfigurationError(f"window_size must be in [1, {x.shape[0]}], got {window_size}")
    return _moving_transform(x, int(window_size), int(word_length), bool(normalise))


def words_for(coeffs: np.ndarray, breakpoints: np.ndarray) -> np.ndarray:
    """One word per coefficient row: each letter is the first bin whose upper bound is >= the value."""
    C = np.ascontiguousarray(coeffs, dtype=np.float64)
    if C.ndim == 1:
        C = C[None, :]
    bps = np.ascontiguousarray(breakpoints, dtype=np.float64)
    return _words_for(C, bps, letter_bits_for(bps.shape[1]))


def sfa_words(
    series: np.ndarray,
    breakpoints: np.ndarray,
    *,
    window_size: int,
    normalise: bool,
) -> np.ndarray:
    """Sliding-window SFA words of one series at the breakpoints' word length."""
    word_length = int(breakpoints.shape[0])
    mft = moving_transform(series, window_size=window_size, word_length=word_length, normalise=normalise)
    return words_for(mft, breakpoints)


def shorten_words(words, current_length: int, new_length: int, alphabet_size: int = ALPHABET_SIZE):
    """Keep the first `new_length` letters of words encoded at `current_length` letters."""
    if new_length > current_length:
        raise ConfigurationError(
            f"Cannot increase word length, current: {current_length}, requested: {new_length}"
        )
    if new_length < 2:
        raise ConfigurationError(f"Invalid word length requested, current: {current_length}, requested: {new_length}")
    shift = letter_bits_for(alphabet_size) * (current_length - new_length)
    shortened = np.right_shift(np.asarray(words, dtype=np.int64), shift)
    if np.ndim(shortened) == 0:
        return int(shortened)
    return shortened


def word_to_letters(word: int, word_length: int, alphabet_size: int = ALPHABET_SIZE) -> List[int]:
    """Decode a word into its letters, first letter first."""
    bits = letter_bits_for(alphabet_size)
    mask = (1 << bits) - 1
    return [(int(word) >> (bits * (word_length - 1 - i))) & mask for i in range(word_length)]
