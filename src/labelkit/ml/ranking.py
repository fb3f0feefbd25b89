"""Label ranking: raw model output -> ranked, display-ready labels.

Ranking is a pure function of its inputs. Every call builds and discards its
own bounded heap, so one ranker can be shared freely between threads.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

import numpy as np
from numpy.typing import ArrayLike, NDArray

from labelkit.errors import EmptyInputError, ShapeMismatchError

logger = logging.getLogger(__name__)

QUANTIZED_SCALE: float = 255.0


class OutputMode(StrEnum):
    TOP_K = "top_k"
    TOP_1 = "top_1"


@dataclass(frozen=True)
class RankedLabel:
    """A single classification prediction."""

    label: str
    confidence: float

    def display(self) -> str:
        """Render as ``label:0.873``."""
        return f"{self.label}:{self.confidence:.3f}"


UNINITIALIZED = (RankedLabel(label="Uninitialized Classifier.", confidence=0.0),)


def to_confidences(raw_output: ArrayLike) -> NDArray[np.float64]:
    """Flatten a ``[1, N]`` or ``[N]`` output tensor into per-class confidences.

    Quantized (8-bit) outputs are scaled to [0, 1] by dividing by 255; signed
    bytes are read as unsigned. Float outputs are widened to
    float64 without rounding.
    """
    array = np.asarray(raw_output)
    if array.ndim == 2 and array.shape[0] == 1:
        array = array[0]
    if array.ndim != 1:
        raise ShapeMismatchError(f"Expected output of shape [1, N] or [N], got {list(array.shape)}")

    if array.dtype == np.int8:
        array = array.view(np.uint8)
    if array.dtype == np.uint8:
        return array.astype(np.float64) / QUANTIZED_SCALE
    return array.astype(np.float64, copy=False)


def _check_shape(scores: NDArray[np.float64], labels: Sequence[str]) -> None:
    if len(scores) != len(labels):
        raise ShapeMismatchError(f"Got {len(scores)} confidences for {len(labels)} labels")
    if len(labels) == 0:
        raise EmptyInputError("Cannot rank an empty label table")


def rank_top_k(raw_output: ArrayLike, labels: Sequence[str], k: int) -> list[RankedLabel]:
    """Return the ``min(N, k)`` most confident labels.

    Sorted by descending confidence; equal confidences keep ascending class
    index order.

    Raises:
        ShapeMismatchError: If the output and label table lengths differ.
        EmptyInputError: If there are no classes.
        ValueError: If ``k`` is negative.
    """
    if k < 0:
        raise ValueError(f"k must be non-negative, got {k}")
    scores = to_confidences(raw_output)
    _check_shape(scores, labels)

    # Min-heap keyed on (confidence, -index): the root is the weakest entry,
    # and among equal confidences the highest index is evicted first.
    heap: list[tuple[float, int]] = []
    for index, score in enumerate(scores.tolist()):
        heapq.heappush(heap, (score, -index))
        if len(heap) > k:
            heapq.heappop(heap)

    ranked: list[RankedLabel] = []
    while heap:
        score, neg_index = heapq.heappop(heap)
        ranked.append(RankedLabel(label=labels[-neg_index], confidence=score))
    ranked.reverse()
    return ranked


def rank_top_1(raw_output: ArrayLike, labels: Sequence[str]) -> RankedLabel:
    """Return the single most confident label; the lowest index wins ties."""
    scores = to_confidences(raw_output)
    _check_shape(scores, labels)
    index = int(np.argmax(scores))
    return RankedLabel(label=labels[index], confidence=float(scores[index]))


class LabelRanker:
    """Ranks raw model output against a fixed label table."""

    def __init__(self, labels: Sequence[str], top_k: int = 3, mode: OutputMode = OutputMode.TOP_K) -> None:
        if top_k < 0:
            raise ValueError(f"top_k must be non-negative, got {top_k}")
        self._labels = tuple(labels)
        self._top_k = top_k
        self._mode = OutputMode(mode)

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    @property
    def top_k(self) -> int:
        return self._top_k

    @property
    def mode(self) -> OutputMode:
        return self._mode

    def rank(self, raw_output: ArrayLike) -> list[RankedLabel]:
        """Rank one output tensor according to the configured mode."""
        if self._mode is OutputMode.TOP_1:
            ranked = [rank_top_1(raw_output, self._labels)]
        else:
            ranked = rank_top_k(raw_output, self._labels, self._top_k)
        logger.debug("labels: %s", [r.display() for r in ranked])
        return ranked
