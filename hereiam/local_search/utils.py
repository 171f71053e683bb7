from __future__ import annotations

from pathlib import Path
from typing import Iterable, Mapping, Optional, Union

from ..errors import ValidationError
from .constants import DEFAULT_GRANULARITIES, GRANULARITIES

GranularitySelection = Union[Mapping[str, bool], Iterable[str], None]


def safe_relpath(path: str | Path, start: str | Path) -> str:
    try:
        return str(Path(path).resolve().relative_to(Path(start).resolve()))
    except ValueError:
        # not under start; keep the path as given
        return str(Path(path))


def normalize_extensions(extensions: Optional[Iterable[str]]) -> frozenset[str]:
    """Lower-case, dot-prefixed extension set. Empty means "match everything"."""
    out: set[str] = set()
    for ext in extensions or ():
        ext = ext.strip().lower()
        if not ext:
            continue
        out.add(ext if ext.startswith(".") else f".{ext}")
    return frozenset(out)


def normalize_granularities(selection: GranularitySelection, *, default: bool = True) -> frozenset[str]:
    """Turn ``{"paragraph": True, "document": False}`` or ``["page"]`` into a set.

    ``None`` selects the defaults (unless ``default`` is False). Unknown names
    raise ValidationError. The result may be empty; callers decide whether that
    is an error.
    """
    if selection is None:
        return DEFAULT_GRANULARITIES if default else frozenset()
    if isinstance(selection, str):
        names = [selection]
    elif isinstance(selection, Mapping):
        names = [name for name, enabled in selection.items() if enabled]
    else:
        names = list(selection)

    levels = {str(n).strip().lower() for n in names}
    unknown = levels - set(GRANULARITIES)
    if unknown:
        raise ValidationError(
            f"Unknown granularity: {', '.join(sorted(unknown))}",
            {"allowed": list(GRANULARITIES)},
        )
    return frozenset(levels)
