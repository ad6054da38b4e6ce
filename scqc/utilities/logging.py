"""
Logging
-------

This provides a formatter with high-resolution time and thread names, and a set of utility functions
for effective logging of operations on a :py:class:`scqc.utilities.annotation.MatrixStore`.

Collection of log messages is mostly automated by wrapping the tool functions with
:py:func:`logged`, and by tracing the setting and getting of data via the
:py:mod:`scqc.utilities.annotation` accessors, with the occasional explicit logging of a notable
intermediate value via :py:func:`log_calc`.

The main issue is picking the right level for each message. The package defines the following
levels:

* ``INFO`` logs only setting the final results (QC metrics, masks, size factors, assays) in the
  top-level store(s), and warnings about fallbacks.

* ``STEP`` also logs the top-level operations, which gives a basic insight into what was executed.

* ``PARAM`` also logs the parameters of these operations, which matters when tuning QC thresholds
  for a new data set.

* ``CALC`` also logs notable intermediate results (medians, MADs, thresholds, group sizes, etc.).

* ``DEBUG`` logs all the above for nested operations as well.

To achieve this, we track for each store whether it is a top-level (user visible) store or a
temporary one, and whether we are inside a top-level (user invoked) operation or a nested one.
Anything top-level is logged at the coarse levels, anything else at the ``DEBUG`` level.

Each store has a name (see :py:attr:`scqc.utilities.annotation.MatrixStore.name`) which is extended
by a descriptive suffix whenever a derived store is created, giving names like ``pbmc.clean``.
"""

import logging
import sys
from datetime import datetime
from functools import wraps
from inspect import Parameter
from inspect import signature
from logging import DEBUG
from logging import INFO
from logging import Formatter
from logging import Logger
from logging import LogRecord
from logging import StreamHandler
from logging import getLogger
from threading import current_thread
from typing import IO
from typing import Any
from typing import Callable
from typing import List
from typing import Optional
from typing import Tuple
from typing import TypeVar
from typing import Union

import numpy as np
import pandas as pd  # type: ignore

import scqc.utilities.annotation as uta
import scqc.utilities.documentation as utd
import scqc.utilities.parallel as utp
import scqc.utilities.typing as utt

__all__ = [
    "setup_logger",
    "logger",
    "CALC",
    "STEP",
    "PARAM",
    "logged",
    "top_level",
    "log_return",
    "logging_calc",
    "log_calc",
    "log_set",
    "log_get",
    "sizes_description",
    "fractions_description",
    "groups_description",
    "mask_description",
    "ratio_description",
    "fraction_description",
]


class LoggingFormatter(Formatter):
    """
    A formatter that uses a decimal point for milliseconds.
    """

    def formatTime(self, record: Any, datefmt: Optional[str] = None) -> str:
        """
        Format the time.
        """
        record_datetime = datetime.fromtimestamp(record.created)
        if datefmt is not None:
            return record_datetime.strftime(datefmt)

        seconds = record_datetime.strftime("%Y-%m-%d %H:%M:%S")
        msecs = round(record.msecs)
        return f"{seconds}.{msecs:03d}"


#: The log level for tracing processing steps.
STEP = (1 * DEBUG + 3 * INFO) // 4

#: The log level for tracing parameters.
PARAM = (2 * DEBUG + 2 * INFO) // 4

#: The log level for tracing intermediate calculations.
CALC = (3 * DEBUG + 1 * INFO) // 4

logging.addLevelName(STEP, "STEP")
logging.addLevelName(PARAM, "PARAM")
logging.addLevelName(CALC, "CALC")


class ShortLoggingFormatter(LoggingFormatter):
    """
    Provide short level names.
    """

    #: Map the long level names to the fixed-width short level names.
    SHORT_LEVEL_NAMES = dict(
        CRITICAL="CRT",
        ERROR="ERR",
        WARNING="WRN",
        INFO="INF",
        STEP="STP",
        PARAM="PRM",
        CALC="CLC",
        DEBUG="DBG",
        NOTSET="NOT",
    )

    def format(self, record: LogRecord) -> Any:
        record.levelname = self.SHORT_LEVEL_NAMES.get(record.levelname, record.levelname)
        return LoggingFormatter.format(self, record)


#: Global logger object.
LOG: Optional[Logger] = None


@utd.expand_doc()
def setup_logger(
    *,
    level: int = logging.INFO,
    to: IO = sys.stderr,
    time: bool = False,
    process: Optional[bool] = None,
    name: Optional[str] = None,
    long_level_names: Optional[bool] = None,
) -> Logger:
    """
    Setup the global :py:func:`logger`.

    .. note::

        A second call will fail as the logger will already be set up.

    If ``level`` is not specified, only ``INFO`` messages (setting values in the store) and warnings
    will be logged.

    If ``to`` is not specified, the output is sent to ``sys.stderr``.

    If ``time`` (default: {time}), include a millisecond-resolution timestamp in each message.

    If ``name`` (default: {name}) is specified, it is added to each message.

    If ``process`` (default: {process}), include the (sub-)process index in each message. If it is
    ``None``, it is set if the level is below ``INFO`` and we may use more than one processor.

    If ``long_level_names`` (default: {long_level_names}), includes the log level in each message. If
    it is ``False``, the level names are shortened to three characters. If it is ``None``, no level
    names are logged at all.
    """
    assert utp.is_main_process()

    global LOG
    assert LOG is None

    if long_level_names is not None:
        log_format = "%(levelname)s - %(message)s"
    else:
        log_format = "%(message)s"

    if process is None:
        process = level < logging.INFO and utp.get_processors_count() > 1

    if process:
        log_format = "%(threadName)s - " + log_format
        current_thread().name = "#0"

    if name is not None:
        log_format = name + " - " + log_format
    if time:
        log_format = "%(asctime)s - " + log_format

    handler = StreamHandler(to)
    if long_level_names is False:
        handler.setFormatter(ShortLoggingFormatter(log_format))
    else:
        handler.setFormatter(LoggingFormatter(log_format))
    LOG = getLogger("scqc")
    LOG.addHandler(handler)
    LOG.setLevel(level)
    LOG.propagate = False

    LOG.debug("PROCESSORS: %s", utp.get_processors_count())
    return LOG


def logger() -> Logger:
    """
    Access the global logger.

    If :py:func:`setup_logger` has not been called yet, this will call it using the default flags.
    You should therefore call :py:func:`setup_logger` as early as possible.
    """
    global LOG
    if LOG is None:
        LOG = setup_logger()
    return LOG


CALLABLE = TypeVar("CALLABLE")

CALL_LEVEL = 0
INDENT_LEVEL = 0
INDENT_SPACES = "  " * 1000
IS_TOP_LEVEL = True


def logged(**kwargs: Callable[[Any], Any]) -> Callable[[CALLABLE], CALLABLE]:
    """
    Automatically wrap each invocation of the decorated function with logging it. Top-level calls
    are logged using the :py:const:`STEP` log level, with parameters logged at the :py:const:`PARAM`
    log level. Nested calls are logged at the ``DEBUG`` log level.

    By default parameters are logged by simply converting them to a string, with special cases for
    stores, callable functions, boolean masks, vectors and matrices. You can override this by
    specifying ``parameter_name=convert_value_to_logged_value`` for the specific parameter.

    Expected usage is:

    .. code:: python

        @ut.logged()
        def some_function(...):
            ...
    """
    formatter_by_name = kwargs

    def wrap(function: Callable) -> Callable:
        parameters = signature(function).parameters
        for name in formatter_by_name:
            if name not in parameters.keys():
                raise RuntimeError(
                    f"formatter specified for the unknown parameter: {name} "
                    f"for the function: {function.__module__}.{function.__qualname__}"
                )
        ordered_parameters = list(parameters.values())

        @wraps(function)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            global CALL_LEVEL
            global INDENT_LEVEL
            global IS_TOP_LEVEL

            names, values = _collect_parameters(ordered_parameters, *args, **kwargs)
            stores = _collect_stores(values)
            new_stores: List[Any] = []

            old_is_top_level = IS_TOP_LEVEL
            step_level = DEBUG
            try:
                if len(stores) > 0:
                    IS_TOP_LEVEL = False
                for store in stores:
                    if store.is_top_level is None:
                        store.is_top_level = CALL_LEVEL == 0
                        new_stores.append(store)
                    IS_TOP_LEVEL = IS_TOP_LEVEL or bool(store.is_top_level)

                if IS_TOP_LEVEL:
                    step_level = STEP
                    param_level = PARAM
                else:
                    param_level = DEBUG

                name = function.__qualname__
                if name[0] == "_":
                    name = name[1:]
                if logger().isEnabledFor(step_level):
                    logger().log(step_level, "%scall %s:", INDENT_SPACES[: 2 * INDENT_LEVEL], name)
                    INDENT_LEVEL += 1
                CALL_LEVEL += 1

                if logger().isEnabledFor(param_level):
                    for name, value in zip(names, values):
                        log_value = _format_value(value, name, formatter_by_name.get(name))
                        if log_value is not None:
                            logger().log(
                                param_level, "%swith %s: %s", INDENT_SPACES[: 2 * INDENT_LEVEL], name, log_value
                            )

                return function(*args, **kwargs)

            finally:
                if logger().isEnabledFor(step_level):
                    INDENT_LEVEL = max(INDENT_LEVEL - 1, 0)
                CALL_LEVEL -= 1
                IS_TOP_LEVEL = old_is_top_level
                for store in new_stores:
                    store.is_top_level = None

        return wrapper

    return wrap  # type: ignore


def _collect_parameters(parameters: List[Parameter], *args: Any, **kwargs: Any) -> Tuple[List[str], List[Any]]:
    names: List[str] = []
    values: List[Any] = []

    for value, parameter in zip(args, parameters):
        names.append(parameter.name)
        values.append(value)

    for parameter in parameters[len(args) :]:
        names.append(parameter.name)
        values.append(kwargs.get(parameter.name, parameter.default))

    return names, values


def _collect_stores(values: List[Any]) -> List[Any]:
    stores: List[Any] = []
    for value in values:
        if isinstance(value, uta.MatrixStore):
            stores.append(value)
        elif isinstance(value, list):
            stores += _collect_stores(value)
    return stores


def _format_value(  # pylint: disable=too-many-return-statements,too-many-branches
    value: Any, name: str, formatter: Optional[Callable[[Any], Any]] = None
) -> Optional[str]:
    if value is Parameter.empty:
        return None

    if formatter is not None:
        value = formatter(value)
        if value is None:
            return None

    if isinstance(value, uta.MatrixStore):
        return f"{value.name or 'unnamed'} store with {value.n_genes} genes X {value.n_cells} cells"

    if isinstance(value, (np.bool_, bool, str, type(None))):
        return str(value)

    if isinstance(value, (int, float, np.integer, np.floating)):
        value = float(value)
        if "random_seed" in name:
            if value == 0:
                return "0 (time)"
            return f"{value:g} (reproducible)"
        if "fraction" in name:
            return fraction_description(value)
        return f"{value:g}"

    if hasattr(value, "__qualname__"):
        return getattr(value, "__qualname__")

    if isinstance(value, (pd.Series, np.ndarray)) and value.ndim == 1 and value.dtype == "bool":
        return mask_description(value)

    if hasattr(value, "ndim"):
        if value.ndim == 2:
            return f"{value.__class__.__name__} {value.shape[0]} X {value.shape[1]} {utt.shaped_dtype(value)}s"

        if value.ndim == 1:
            value = utt.to_numpy_vector(value)
            if len(value) > 100:
                return f"{len(value)} {value.dtype}s"
            value = list(value)

    if isinstance(value, dict):
        return "{ " + ", ".join(f"{key}: {_format_value(item, str(key))}" for key, item in value.items()) + " }"

    if isinstance(value, (list, tuple, set, frozenset)):
        value = list(value)
        if len(value) > 100:
            return f"{len(value)} {value[0].__class__.__name__}s"
        return f"[ {', '.join(str(element) for element in value)} ]"

    return str(value)


def top_level(store: Any) -> None:
    """
    Indicate that the ``store`` will be returned to the top-level caller, increasing its logging
    level.
    """
    store.is_top_level = True


def log_return(name: str, value: Any, *, formatter: Optional[Callable[[Any], Any]] = None) -> bool:
    """
    Log a ``value`` returned from a function with some ``name``.

    If ``formatter`` is specified, use it to override the default logged value formatting.
    """
    if CALL_LEVEL == 0:
        top_log_level = INFO
    else:
        top_log_level = CALC

    return _log_value(name, value, "return", None, top_log_level, formatter)


def logging_calc() -> bool:
    """
    Whether we are actually logging the intermediate calculations.
    """
    return (IS_TOP_LEVEL and logger().isEnabledFor(CALC)) or (not IS_TOP_LEVEL and logger().isEnabledFor(DEBUG))


def log_calc(name: str, value: Any = None, *, formatter: Optional[Callable[[Any], Any]] = None) -> bool:
    """
    Log an intermediate calculated ``value`` computed from a function with some ``name``.

    If ``formatter`` is specified, use it to override the default logged value formatting.
    """
    return _log_value(name, value, "calc", None, CALC, formatter)


#: The name of the part of the store holding each kind of data.
MEMBER_OF_PER = dict(m="audit", o="cells", v="genes", vo="assays")


def log_set(store: Any, per: str, name: str, value: Any, *, formatter: Optional[Callable[[Any], Any]] = None) -> bool:
    """
    Log setting some data in the ``store``.
    """
    assert per in MEMBER_OF_PER
    is_top_level = bool(store.is_top_level)
    name = f"{store.name or 'unnamed'}.{MEMBER_OF_PER[per]}[{name}]"
    return _log_value(name, value, "set", is_top_level, INFO, formatter)


def log_get(store: Any, per: str, name: Any, value: Any, *, formatter: Optional[Callable[[Any], Any]] = None) -> bool:
    """
    Log getting some data from the ``store``.
    """
    assert per in MEMBER_OF_PER
    is_top_level = bool(store.is_top_level)
    if not isinstance(name, str):
        name = "<data>"
    name = f"{store.name or 'unnamed'}.{MEMBER_OF_PER[per]}[{name}]"
    return _log_value(name, value, "get", is_top_level, CALC, formatter)


def _log_value(
    name: str,
    value: Any,
    kind: str,
    is_top_level: Optional[bool],
    top_log_level: int,
    formatter: Optional[Callable[[Any], Any]] = None,
) -> bool:
    if is_top_level is None:
        is_top_level = IS_TOP_LEVEL

    if is_top_level:
        level = top_log_level
    else:
        level = DEBUG

    if not logger().isEnabledFor(level):
        return False

    if value is None:
        logger().log(level, "%s%s", INDENT_SPACES[: 2 * INDENT_LEVEL], name)
    else:
        log_value = _format_value(value, name, formatter)
        if name[0] == "-":
            logger().log(level, "%s%s: %s", INDENT_SPACES[: 2 * INDENT_LEVEL], name, log_value)
        else:
            logger().log(level, "%s%s %s: %s", INDENT_SPACES[: 2 * INDENT_LEVEL], kind, name, log_value)

    return True


def sizes_description(sizes: Union[utt.Vector, str]) -> str:
    """
    Return a string for logging an array of sizes.
    """
    if isinstance(sizes, str):
        return sizes

    sizes = utt.to_numpy_vector(sizes)
    if sizes.size == 0:
        return f"0 {sizes.dtype}s"
    mean = np.nanmean(sizes)
    return f"{len(sizes)} {sizes.dtype}s with mean {mean:.4g}"


def fractions_description(sizes: Union[utt.Vector, str]) -> str:
    """
    Return a string for logging an array of fractions (between zero and one).
    """
    if isinstance(sizes, str):
        return sizes

    sizes = utt.to_numpy_vector(sizes)
    if sizes.size == 0:
        return f"0 {sizes.dtype}s"
    mean = np.nanmean(sizes)
    percent = mean * 100
    return f"{len(sizes)} {sizes.dtype}s with mean {mean:.4g} ({percent:.4g}%)"


def groups_description(groups: Union[utt.Vector, str]) -> str:
    """
    Return a string for logging an array of group indices.

    .. note::

        This assumes that the indices are consecutive, with negative values indicating "no group".
    """
    if isinstance(groups, str):
        return groups

    groups = utt.to_numpy_vector(groups)
    if groups.size == 0:
        return f"0 {groups.dtype} elements"
    groups_count = int(np.max(groups)) + 1
    ungrouped_count = int(np.sum(groups < 0))

    if groups_count <= 0:
        return f"{len(groups)} {groups.dtype} elements with no groups"

    mean = (len(groups) - ungrouped_count) / groups_count
    return (
        ratio_description(len(groups), f"{groups.dtype} element", ungrouped_count, "ungrouped")
        + f" with {groups_count} groups with mean size {mean:.4g}"
    )


def mask_description(mask: Union[str, utt.Vector]) -> str:
    """
    Return a string for logging a boolean mask.
    """
    if isinstance(mask, str):
        return mask

    mask = utt.to_numpy_vector(mask)
    if mask.size == 0:
        return f"0 {mask.dtype}s"
    if mask.dtype == "bool":
        return ratio_description(mask.size, "bool", np.sum(mask), "true")
    return ratio_description(mask.size, str(mask.dtype), np.sum(mask > 0), "positive")


def ratio_description(denominator: float, element: str, numerator: float, condition: str) -> str:
    """
    Return a string for describing a ratio (including a percent representation).
    """
    assert numerator >= 0
    assert denominator > 0

    if int(numerator) == numerator:
        numerator = int(numerator)
    if int(denominator) == denominator:
        denominator = int(denominator)

    percent = (numerator * 100) / denominator
    return f"{numerator} {condition} ({percent:.4g}%) out of {denominator} {element}s"


def fraction_description(fraction: Optional[float]) -> str:
    """
    Return a string for describing a fraction (including a percent representation).
    """
    if fraction is None:
        return "None"
    percent = fraction * 100
    return f"{fraction:.4g} ({percent:.4g}%)"
