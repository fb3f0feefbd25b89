"""Fruit emoji lookup for display strings."""

from __future__ import annotations

from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from labelkit.ml.ranking import RankedLabel

UNKNOWN = "unknown"

# Fruits without a widely supported emoji map to "".
FRUIT_EMOJI = MappingProxyType(
    {
        "apple": "\U0001F34E",
        "banana": "\U0001F34C",
        "grape": "\U0001F347",
        "kiwi": "\U0001F95D",
        "mango": "",
        "orange": "\U0001F34A",
        "pineapple": "\U0001F34D",
        "raspberry": "",
        "strawberry": "\U0001F353",
        UNKNOWN: "",
    }
)


def fruit_type(label: str) -> str:
    """Return the canonical fruit name for a label, or ``unknown``."""
    name = label.strip().lower()
    return name if name in FRUIT_EMOJI else UNKNOWN


def emoji_for(label: str) -> str:
    """Return the emoji for a label; ``""`` when there is none."""
    return FRUIT_EMOJI[fruit_type(label)]


def format_display(ranked: RankedLabel) -> str:
    """Render a ranked label, using its emoji when one exists.

    ``"\U0001F34E: 0.873"`` for a known fruit with an emoji, ``"label:0.873"`` otherwise.
    """
    emoji = emoji_for(ranked.label)
    if emoji:
        return f"{emoji}: {ranked.confidence:.3f}"
    return ranked.display()
