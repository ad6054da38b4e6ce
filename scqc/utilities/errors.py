"""
Errors
------

The error taxonomy of the package.

Structural errors (:py:class:`DimensionMismatch`, :py:class:`NotFound`) and degenerate inputs
(:py:class:`DegenerateInput`) abort the operation that detected them. A
:py:class:`DegenerateGroup` is only raised internally by the size factors estimation, which recovers
from it by falling back to library size factors for the affected cells.
"""

from typing import Collection
from typing import Optional

__all__ = [
    "ScqcError",
    "DimensionMismatch",
    "NotFound",
    "DegenerateInput",
    "DegenerateGroup",
    "describe_names",
]


class ScqcError(Exception):
    """
    Base class of all the errors raised by the package.
    """


class DimensionMismatch(ScqcError, ValueError):
    """
    Some data does not match the shape of the count matrix it is attached to.
    """


class NotFound(ScqcError, KeyError):
    """
    Some assay, metric, mask, subset or identifier does not exist.
    """

    def __str__(self) -> str:
        # ``KeyError`` quotes its message.
        return str(self.args[0]) if self.args else ""


class DegenerateInput(ScqcError, ValueError):
    """
    The input has no information to compute from (empty metric, all-zero library sizes, ...).
    """


class DegenerateGroup(ScqcError, ValueError):
    """
    A group of cells is too small to estimate pooled size factors for.
    """

    def __init__(self, message: str, group: Optional[int] = None) -> None:
        super().__init__(message)
        #: The index of the offending group, if known.
        self.group = group


def describe_names(names: Collection[str], max_names: int = 5) -> str:
    """
    Return a short description of offending identifiers for an error message.
    """
    names = list(names)
    text = ", ".join(str(name) for name in names[:max_names])
    if len(names) > max_names:
        text += f", ... ({len(names)} in total)"
    return text
