"""
Documentation
-------------

Keep the documented defaults of the tools in sync with :py:mod:`scqc.parameters`.
"""

from inspect import Parameter
from inspect import signature
from typing import Any
from typing import Callable
from typing import TypeVar
from warnings import warn

__all__ = [
    "expand_doc",
]


CALLABLE = TypeVar("CALLABLE")


def expand_doc(**kwargs: Any) -> Callable[[CALLABLE], CALLABLE]:
    """
    Substitute ``{name}`` placeholders in the decorated function's docstring.

    The values come from the explicit ``kwargs`` and from the default values of the function's own
    parameters, so writing ``(default: {nmads})`` in a docstring will always show the actual default
    taken from :py:mod:`scqc.parameters`:

    .. code:: python

        @expand_doc(scale=1.4826)
        def find(metric, nmads=3):
            '''
            Flag values more than {nmads} scaled MADs away (MAD scale {scale}).
            '''

    A docstring without any placeholder triggers a warning, as the decorator is then useless.
    """

    def documented(function: Callable) -> Callable:
        values = dict(kwargs)
        for parameter in signature(function).parameters.values():
            if parameter.default is not Parameter.empty and parameter.name not in values:
                values[parameter.name] = parameter.default

        assert function.__doc__ is not None
        try:
            expanded_doc = function.__doc__.format_map(values)
        except (KeyError, IndexError, ValueError) as exception:
            raise RuntimeError(
                f"invalid placeholder {exception} in the documentation of the function "
                f"{function.__module__}.{function.__qualname__}"
            ) from exception

        if expanded_doc == function.__doc__:
            warn(f"@expand_doc had no effect on the documentation of the function "
                 f"{function.__module__}.{function.__qualname__}")

        function.__doc__ = expanded_doc
        return function

    return documented  # type: ignore
