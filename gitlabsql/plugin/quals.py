from __future__ import annotations
import logging
from typing import Any, Callable, Dict, Sequence, Tuple, TypeVar

logger = logging.getLogger(__name__)

O = TypeVar("O")

# applier(options, qual_value) mutates options in place
QualApplier = Callable[[Any, Any], None]


def set_option(option: str, cast: Callable[[Any], Any] = lambda v: v) -> QualApplier:
    """Applier that assigns cast(value) to options.<option>."""

    def _apply(opts: Any, value: Any) -> None:
        setattr(opts, option, cast(value))

    _apply.__name__ = f"set_{option}"
    return _apply


def apply_optional_quals(
    opts: O,
    quals: Dict[str, Any],
    appliers: Sequence[Tuple[str, QualApplier]],
) -> O:
    """
    Translate equality qualifiers into upstream request options.

    Appliers run in order, one per qualifier present in quals. Qualifiers
    without an applier are left alone: the host still filters on them after
    the fetch.
    """
    for name, applier in appliers:
        value = quals.get(name)
        if value is None:
            continue
        logger.debug("apply_optional_quals: %s=%r", name, value)
        applier(opts, value)
    return opts
