"""Label table loading."""

from __future__ import annotations

import logging
from pathlib import Path

from labelkit.errors import ConfigurationError

logger = logging.getLogger(__name__)


def load_label_table(path: Path | str, expected_size: int | None = None) -> tuple[str, ...]:
    """Read a label file with one label per line.

    Args:
        path: Label file (UTF-8 or ASCII).
        expected_size: Number of output classes the model produces, if known.

    Returns:
        The labels; index ``i`` names output class ``i``.

    Raises:
        ConfigurationError: If the file is missing, unreadable, not valid UTF-8,
            empty, or does not hold exactly ``expected_size`` labels.
    """
    label_path = Path(path)
    try:
        text = label_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigurationError(f"Label file not found: {label_path}") from None
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Failed to read label file {label_path}: {exc}") from exc

    labels = tuple(text.splitlines())
    if not labels:
        raise ConfigurationError(f"Label file is empty: {label_path}")
    if expected_size is not None and len(labels) != expected_size:
        raise ConfigurationError(
            f"Label file {label_path} has {len(labels)} labels but the model outputs {expected_size} classes"
        )

    logger.info("Loaded %d labels from %s", len(labels), label_path)
    return labels
