"""
Rank-probability helpers for the NDCG surrogate loss.

All functions work on the values of a single user: the predictions (or
ratings) of the items that user rated, in the user's rating order.
"""

import math

import numpy as np
from scipy.special import softmax

LN2 = math.log(2)


def ideal_dcg(ratings) -> float:
    """
    Ideal discounted cumulative gain of a rating multiset.

    Ratings are sorted descending and summed as ``ln2 * (2^r - 1) / ln(k + 2)``
    for 0-based rank ``k``. Only the multiset matters, not the input order.
    """
    values = np.sort(np.asarray(ratings, dtype=np.float64))[::-1]
    if values.size == 0:
        raise ValueError("Ideal DCG is undefined for an empty rating list")
    ranks = np.arange(values.size, dtype=np.float64)
    return float(np.sum(LN2 * (np.exp2(values) - 1.0) / np.log(ranks + 2.0)))


def rank_probabilities(scores, beta: float) -> np.ndarray:
    """Luce-choice probability of each item being ranked first, at temperature ``beta``."""
    scores = np.asarray(scores, dtype=np.float64)
    if scores.size == 0:
        raise ValueError("Rank probabilities are undefined for an empty score list")
    return softmax(beta * scores)


def smoothed_positions(probabilities) -> np.ndarray:
    """
    Continuous rank positions from rank probabilities.

    A probability of 1 maps to position 1 and a probability of 0 to the
    length of the list.
    """
    probabilities = np.asarray(probabilities, dtype=np.float64)
    n = probabilities.size
    return n - (n - 1) * probabilities


def rank_gradients(ratings, probabilities, idcg: float) -> np.ndarray:
    """
    Gradient term ``g`` of every rated item.

    ``g = (2^r - 1) / idcg / ln(position + 1)^3 * probability``
    """
    ratings = np.asarray(ratings, dtype=np.float64)
    probabilities = np.asarray(probabilities, dtype=np.float64)
    positions = smoothed_positions(probabilities)
    return (np.exp2(ratings) - 1.0) / idcg / np.log(positions + 1.0) ** 3 * probabilities
