"""Image classifier facade: encode an image, run inference, rank the output.

Inference itself is delegated to an opaque callable; the classifier only owns
the tensor layout on both sides of that call.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from labelkit.errors import ConfigurationError
from labelkit.ml.encoding import TensorEncoder
from labelkit.ml.labels import load_label_table
from labelkit.ml.ranking import UNINITIALIZED, LabelRanker, OutputMode

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    import numpy as np
    from numpy.typing import ArrayLike, NDArray

    from labelkit.ml.encoding import ModelIOSpec
    from labelkit.ml.preprocessing import ImageInput
    from labelkit.ml.ranking import RankedLabel

    InferFn = Callable[[NDArray[np.generic]], ArrayLike]

logger = logging.getLogger(__name__)


class ImageClassifier:
    """Classifies images with one model variant.

    Setup failures (no inference backend, missing or mismatched label table)
    do not raise. They are logged once and leave the classifier disabled:
    every call then returns the ``UNINITIALIZED`` sentinel.
    """

    def __init__(
        self,
        io_spec: ModelIOSpec,
        labels_path: Path | None,
        infer: InferFn | None,
        *,
        top_k: int = 3,
        mode: OutputMode = OutputMode.TOP_K,
        num_classes: int | None = None,
        model_name: str = "custom",
    ) -> None:
        self._model_name = model_name
        self._encoder = TensorEncoder(io_spec)
        self._infer = infer
        self._ranker: LabelRanker | None = None
        self._setup_error: str | None = None
        # Guards the encoder's reused buffer until inference has consumed it.
        self._cycle_lock = threading.Lock()

        try:
            if infer is None:
                raise ConfigurationError(f"No inference backend available for {model_name}")
            if labels_path is None:
                raise ConfigurationError(f"No label file available for {model_name}")
            labels = load_label_table(labels_path, expected_size=num_classes)
        except ConfigurationError as exc:
            self._setup_error = str(exc)
            logger.error("Error while setting up classifier %s: %s", model_name, exc)
            return

        self._ranker = LabelRanker(labels, top_k=top_k, mode=mode)
        logger.info(
            "Created classifier %s (encoding=%s, mode=%s, top_k=%d, classes=%d)",
            model_name,
            io_spec.encoding,
            self._ranker.mode,
            top_k,
            len(labels),
        )

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def is_ready(self) -> bool:
        return self._ranker is not None

    @property
    def setup_error(self) -> str | None:
        """Why setup failed, or None when the classifier is ready."""
        return self._setup_error

    @property
    def labels(self) -> tuple[str, ...]:
        return self._ranker.labels if self._ranker is not None else ()

    def prepare(self, image: ImageInput) -> NDArray[np.generic]:
        """Encode an image into the model's input tensor (reused buffer)."""
        return self._encoder.encode(image)

    def rank(self, raw_output: ArrayLike) -> list[RankedLabel]:
        """Rank a raw output tensor produced by the external inference call."""
        if self._ranker is None:
            return list(UNINITIALIZED)
        return self._ranker.rank(raw_output)

    def classify(self, image: ImageInput) -> list[RankedLabel]:
        """Run one full encode, infer, rank cycle.

        Raises:
            ShapeMismatchError: If the model output does not match the label table.
            ValueError: If the image input is not in a supported form.
        """
        if self._ranker is None or self._infer is None:
            logger.error("Image classifier has not been initialized; skipped.")
            return list(UNINITIALIZED)

        logger.debug("classify frame")
        with self._cycle_lock:
            tensor = self.prepare(image)
            raw_output = self._infer(tensor)
        return self._ranker.rank(raw_output)
