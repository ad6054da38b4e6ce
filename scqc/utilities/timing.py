"""
Timing
------

Collect timing information about the relevant functions (and steps within functions) in a
controlled way, with low overhead, instead of profiling everything and drowning in irrelevant data.

Timing is off by default. Set the ``SCQC_COLLECT_TIMING`` environment variable to ``true`` (or call
:py:func:`collect_timing`) to have every :py:func:`timed_call` function and every
:py:func:`timed_step` block append a line to a CSV file.
"""

import os
import sys
from contextlib import contextmanager
from functools import wraps
from threading import current_thread
from threading import local as thread_local
from time import perf_counter_ns
from time import process_time_ns
from typing import IO
from typing import Any
from typing import Callable
from typing import Iterator
from typing import List
from typing import Optional
from typing import TypeVar

import scqc.utilities.documentation as utd
import scqc.utilities.logging as utl

__all__ = [
    "collect_timing",
    "flush_timing",
    "in_parallel_map",
    "log_steps",
    "timed_step",
    "timed_call",
    "timed_parameters",
    "current_step",
    "StepTiming",
    "Counters",
]

COLLECT_TIMING = False

TIMING_PATH = "timing.csv"
TIMING_MODE = "a"
TIMING_BUFFERING = 1
TIMING_FILE: Optional[IO] = None

LOG_ALL_STEPS = False

THREAD_LOCAL = thread_local()


@utd.expand_doc()
def collect_timing(
    collect: bool,
    path: str = TIMING_PATH,  # pylint: disable=used-prior-global-declaration
    mode: str = TIMING_MODE,  # pylint: disable=used-prior-global-declaration
    *,
    buffering: int = TIMING_BUFFERING,  # pylint: disable=used-prior-global-declaration
) -> None:
    """
    Specify whether, where and how to collect timing information.

    The data is written to the ``path`` (default: {path}), opened using the ``mode`` (default:
    {mode}) and the ``buffering`` (default: {buffering}). The environment variables
    ``SCQC_TIMING_CSV``, ``SCQC_TIMING_MODE`` and ``SCQC_TIMING_BUFFERING`` override these defaults.

    This will flush and close the previous timing file, if any.

    Each CSV line (no headers) starts with the invocation context (a ``;``-separated path of step
    names), followed by ``elapsed_ns,<value>,cpu_ns,<value>`` counting only the time spent in this
    context and not in nested ones, and then any ``name,value`` pairs given to
    :py:func:`timed_parameters`.
    """
    assert current_thread().name in ("#0", "MainThread")

    global TIMING_PATH
    global TIMING_MODE
    global TIMING_BUFFERING
    global TIMING_FILE
    global COLLECT_TIMING

    if not path.endswith(".csv"):
        raise ValueError(f"the timing path: {path} does not end with: .csv")

    TIMING_PATH = path
    TIMING_MODE = mode
    TIMING_BUFFERING = buffering

    if TIMING_FILE is not None:
        TIMING_FILE.flush()
        TIMING_FILE.close()
        TIMING_FILE = None

    if collect:
        TIMING_FILE = open(TIMING_PATH, TIMING_MODE, buffering=TIMING_BUFFERING, encoding="utf8")

    COLLECT_TIMING = collect


def flush_timing() -> None:
    """
    Flush the timing information, if we are collecting it.
    """
    if TIMING_FILE is not None:
        TIMING_FILE.flush()


def in_parallel_map(map_index: int, process_index: int) -> None:
    """
    Redirect the timing of a :py:func:`scqc.utilities.parallel.parallel_map` sub-process to
    ``<timing>.<map>.<process>.csv`` so sub-processes never share a file.
    """
    if COLLECT_TIMING:
        assert TIMING_PATH.endswith(".csv")
        collect_timing(True, f"{TIMING_PATH[:-4]}.{map_index}.{process_index}.csv")


def log_steps(log: bool) -> None:
    """
    Whether to log (at ``DEBUG`` level) entering and leaving every timed step.

    This only works when collecting timing, and is a crude way to find where a long computation is
    stuck. Also set by the ``SCQC_LOG_ALL_STEPS`` environment variable.
    """
    global LOG_ALL_STEPS
    LOG_ALL_STEPS = log


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name, str(default)).lower()
    if value not in ("true", "false"):
        raise ValueError(f"the environment variable: {name} must be true or false, not: {value}")
    return value == "true"


if "sphinx" not in sys.argv[0]:
    TIMING_PATH = os.environ.get("SCQC_TIMING_CSV", TIMING_PATH)
    TIMING_MODE = os.environ.get("SCQC_TIMING_MODE", TIMING_MODE)
    TIMING_BUFFERING = int(os.environ.get("SCQC_TIMING_BUFFERING", str(TIMING_BUFFERING)))
    collect_timing(_env_flag("SCQC_COLLECT_TIMING", COLLECT_TIMING))
    log_steps(_env_flag("SCQC_LOG_ALL_STEPS", LOG_ALL_STEPS))


class Counters:
    """
    The counters for the execution times.
    """

    def __init__(self, *, elapsed_ns: int = 0, cpu_ns: int = 0) -> None:
        self.elapsed_ns = elapsed_ns  #: Elapsed time counter.
        self.cpu_ns = cpu_ns  #: CPU time counter.

    @staticmethod
    def now() -> "Counters":
        """
        Return the current value of the counters.
        """
        return Counters(elapsed_ns=perf_counter_ns(), cpu_ns=process_time_ns())

    def __add__(self, other: "Counters") -> "Counters":
        return Counters(elapsed_ns=self.elapsed_ns + other.elapsed_ns, cpu_ns=self.cpu_ns + other.cpu_ns)

    def __iadd__(self, other: "Counters") -> "Counters":
        self.elapsed_ns += other.elapsed_ns
        self.cpu_ns += other.cpu_ns
        return self

    def __sub__(self, other: "Counters") -> "Counters":
        return Counters(elapsed_ns=self.elapsed_ns - other.elapsed_ns, cpu_ns=self.cpu_ns - other.cpu_ns)


class StepTiming:  # pylint: disable=too-few-public-methods
    """
    Timing information for some named processing step.
    """

    def __init__(self, name: str, parent: Optional["StepTiming"]) -> None:
        #: The parent step, if any.
        self.parent = parent

        if name[0] != ".":
            name = ";" + name

        if parent is None:
            name = name[1:]

        #: The full context of the processing step.
        self.context: str = name if parent is None else parent.context + name

        #: Parameters of interest of the processing step.
        self.parameters: List[str] = []

        #: The time spent in nested steps of the same thread.
        self.total_nested = Counters()


@contextmanager
def timed_step(name: str) -> Iterator[None]:
    """
    Collect timing information for a computation step.

    Expected usage is:

    .. code:: python

        with ut.timed_step("pools"):
            some_computation()

    If the ``name`` starts with a ``.`` or a ``_``, it is appended to the name of the innermost
    surrounding step (which must exist). This is commonly used to time sub-steps of a function.
    """
    if not COLLECT_TIMING:
        yield None
        return

    steps_stack = getattr(THREAD_LOCAL, "steps_stack", None)
    if steps_stack is None:
        steps_stack = THREAD_LOCAL.steps_stack = []

    parent_timing: Optional[StepTiming] = None
    if len(steps_stack) > 0:
        parent_timing = steps_stack[-1]
    if name[0] == "_":
        name = f".{name[1:]}"
    if name[0] == ".":
        assert parent_timing is not None

    step_timing = StepTiming(name, parent_timing)
    steps_stack.append(step_timing)

    yield_point = Counters.now()
    try:
        if LOG_ALL_STEPS:
            utl.logger().debug("{[( %s", step_timing.context)
        yield None

    finally:
        total_times = Counters.now() - yield_point
        if LOG_ALL_STEPS:
            utl.logger().debug("}]) %s", step_timing.context)

        steps_stack.pop()

        if parent_timing is not None:
            parent_timing.total_nested += total_times

        total_times = total_times - step_timing.total_nested
        _print_timing(step_timing.context, total_times, step_timing.parameters)


def _print_timing(invocation_context: str, total_times: Counters, step_parameters: List[str]) -> None:
    global TIMING_FILE
    if TIMING_FILE is None:
        TIMING_FILE = open(TIMING_PATH, "a", buffering=TIMING_BUFFERING, encoding="utf8")
    text = [
        invocation_context,
        "elapsed_ns",
        str(total_times.elapsed_ns),
        "cpu_ns",
        str(total_times.cpu_ns),
    ]
    text.extend(step_parameters)
    TIMING_FILE.write(",".join(text) + "\n")


def timed_parameters(**kwargs: Any) -> None:
    """
    Associate relevant timing parameters to the innermost :py:func:`timed_step`.

    For example, ``timed_parameters(cells=2, genes=3)`` appends ``cells,2,genes,3`` to the step's
    line in the timing file.
    """
    step_timing = current_step()
    if step_timing is not None:
        for name, value in kwargs.items():
            step_timing.parameters.append(name)
            step_timing.parameters.append(str(value))


CALLABLE = TypeVar("CALLABLE")


def timed_call(name: Optional[str] = None) -> Callable[[CALLABLE], CALLABLE]:
    """
    Automatically wrap each invocation of the decorated function with :py:func:`timed_step` using
    the ``name`` (by default, the function's ``__qualname__``).

    Expected usage is:

    .. code:: python

        @ut.timed_call()
        def some_function(...):
            ...
    """
    if COLLECT_TIMING:

        def wrap(function: Callable) -> Callable:
            @wraps(function)
            def timed(*args: Any, **kwargs: Any) -> Any:
                with timed_step(name or function.__qualname__):
                    return function(*args, **kwargs)

            timed.__is_timed__ = True  # type: ignore
            return timed

    else:

        def wrap(function: Callable) -> Callable:
            function.__is_timed__ = True  # type: ignore
            return function

    return wrap  # type: ignore


def current_step() -> Optional[StepTiming]:
    """
    The timing collector of the innermost (current) :py:func:`timed_step`, if any.
    """
    if not COLLECT_TIMING:
        return None
    steps_stack = getattr(THREAD_LOCAL, "steps_stack", None)
    if not steps_stack:
        return None
    return steps_stack[-1]
