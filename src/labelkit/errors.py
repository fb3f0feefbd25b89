"""Exception hierarchy for LabelKit."""

from __future__ import annotations


class LabelKitError(Exception):
    """Base class for all LabelKit errors."""


class ConfigurationError(LabelKitError, RuntimeError):
    """Setup failed: missing or corrupt label file, label/model size mismatch, missing model.

    Fatal at initialization and never retried.
    """


class ShapeMismatchError(LabelKitError, ValueError):
    """The confidence vector length differs from the label table length."""


class EmptyInputError(LabelKitError, ValueError):
    """Ranking was requested over zero classes."""


class ImageTooLargeError(LabelKitError, ValueError):
    """Raised when an image exceeds the configured pixel limit."""
