from __future__ import annotations

import numpy as np


def _pairs(y_true: np.ndarray, y_pred: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)
    m = np.isfinite(y_true) & np.isfinite(y_pred)
    return y_true[m], y_pred[m]


def bias(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """Mean of forecast minus observation."""
    yt, yp = _pairs(y_true, y_pred)
    if yt.size == 0:
        return float("nan")
    return float(np.mean(yp - yt))


def rmse(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    yt, yp = _pairs(y_true, y_pred)
    if yt.size == 0:
        return float("nan")
    return float(np.sqrt(np.mean((yt - yp) ** 2)))


def mae(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    yt, yp = _pairs(y_true, y_pred)
    if yt.size == 0:
        return float("nan")
    return float(np.mean(np.abs(yt - yp)))


def stde(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """
    Standard deviation of the error (n-1 denominator).
    NaN with fewer than two pairs.
    """
    yt, yp = _pairs(y_true, y_pred)
    if yt.size < 2:
        return float("nan")
    return float(np.std(yp - yt, ddof=1))


def brier_score(fcst_prob: np.ndarray, obs_prob: np.ndarray) -> float:
    """Mean squared difference between forecast probability and observed 0/1 outcome."""
    op, fp = _pairs(obs_prob, fcst_prob)
    if op.size == 0:
        return float("nan")
    return float(np.mean((op - fp) ** 2))


def brier_skill_score(bs: float, bs_ref: float) -> float:
    """
    1 - bs / bs_ref.

    A perfect forecast (bs == 0) scores 1 whatever the reference. A reference
    score of 0 with an imperfect forecast gives -inf.
    """
    if not (np.isfinite(bs) and np.isfinite(bs_ref)):
        return float("nan")
    if bs == 0:
        return 1.0
    if bs_ref == 0:
        return float("-inf")
    return float(1.0 - bs / bs_ref)
