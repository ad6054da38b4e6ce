"""
Parallel
--------

The QC and normalization computations are whole-matrix numpy operations, which already use
multiple threads internally (through whatever BLAS numpy was built with). The only place where we
have independent Python-level work is estimating the pooled size factors of different groups of
cells, which share nothing but read-only access to the count matrix.

Due to the GIL, we run such work in forked sub-processes. Each sub-process starts with a
copy-on-write view of the full Python state, so the inputs are available "for free", and returns
its results, which the main process assigns into disjoint output slots without any locking.

To avoid oversubscription (each of N sub-processes spawning N numpy threads), the sub-processes
split the allowed processors between them, and limit their numpy thread pools accordingly using
``threadpoolctl``. Hyper-threading is useless for heavy compute, so by default we use one process
per physical core (counted using ``psutil``).
"""

import ctypes
import os
import sys
from multiprocessing import Value
from multiprocessing import get_context
from threading import current_thread
from typing import Any
from typing import Callable
from typing import List
from typing import Optional
from typing import Tuple
from typing import TypeVar

import psutil  # type: ignore
from threadpoolctl import threadpool_limits  # type: ignore

import scqc.utilities.documentation as utd
import scqc.utilities.logging as utl
import scqc.utilities.timing as utm

__all__ = [
    "is_main_process",
    "set_processors_count",
    "get_processors_count",
    "parallel_map",
]


PROCESSORS_COUNT = 0

MAIN_PROCESS_PID = os.getpid()

IS_MAIN_PROCESS: Optional[bool] = True

MAP_INDEX = 0
PROCESS_INDEX = 0

PROCESSES_COUNT = 0
NEXT_PROCESS_INDEX = Value(ctypes.c_int32, lock=True)
PARALLEL_FUNCTION: Optional[Callable[[int], Any]] = None


def is_main_process() -> bool:
    """
    Return whether this is the main process, as opposed to a sub-process spawned by
    :py:func:`parallel_map`.
    """
    return bool(IS_MAIN_PROCESS)


def set_processors_count(processors: int) -> None:
    """
    Set the (maximal) number of processors to use in parallel.

    The default value of ``0`` means using all the available physical processors. Otherwise, the
    value is the actual (positive) number of processors to use. Override this by setting the
    ``SCQC_PROCESSORS_COUNT`` environment variable or by invoking this function from the main
    thread.
    """
    assert IS_MAIN_PROCESS

    if processors == 0:
        processors = psutil.cpu_count(logical=False) or psutil.cpu_count() or 1

    if processors <= 0:
        raise ValueError(f"invalid processors count: {processors}")

    global PROCESSORS_COUNT
    PROCESSORS_COUNT = processors

    threadpool_limits(limits=PROCESSORS_COUNT)


if "sphinx" not in sys.argv[0]:
    set_processors_count(int(os.environ.get("SCQC_PROCESSORS_COUNT", "0")))


def get_processors_count() -> int:
    """
    Return the number of processors we are allowed to use.
    """
    assert PROCESSORS_COUNT > 0
    return PROCESSORS_COUNT


T = TypeVar("T")


@utd.expand_doc()
def parallel_map(
    function: Callable[[int], T],
    invocations: int,
    *,
    max_processors: int = 0,
) -> List[T]:
    """
    Execute ``function``, in parallel, ``invocations`` times. Each invocation is given the
    invocation's index as its single argument, and the results are returned in the order of the
    indices.

    Only the main process may invoke this, that is, nested ``parallel_map`` calls are not supported.

    This uses :py:func:`get_processors_count` processes. If ``max_processors`` (default:
    {max_processors}) is zero, use all available processors. Otherwise, further reduces the number of
    processes used to at most the specified value.

    If this ends up using a single process, runs the function serially. Otherwise, fork new
    processes to execute the function invocations (using
    ``multiprocessing.get_context('fork').Pool``).
    """
    assert function.__is_timed__  # type: ignore

    global IS_MAIN_PROCESS
    assert IS_MAIN_PROCESS

    global PROCESSES_COUNT
    PROCESSES_COUNT = min(PROCESSORS_COUNT, invocations)
    if max_processors != 0:
        assert max_processors > 0
        PROCESSES_COUNT = min(PROCESSES_COUNT, max_processors)

    if PROCESSES_COUNT <= 1:
        return [function(index) for index in range(invocations)]

    NEXT_PROCESS_INDEX.value = 0  # type: ignore

    global PARALLEL_FUNCTION
    assert PARALLEL_FUNCTION is None

    global MAP_INDEX
    MAP_INDEX += 1

    PARALLEL_FUNCTION = function
    IS_MAIN_PROCESS = None
    try:
        results: List[Optional[T]] = [None] * invocations
        utm.flush_timing()
        with utm.timed_step("parallel_map"):
            utm.timed_parameters(index=MAP_INDEX, processes=PROCESSES_COUNT)
            with get_context("fork").Pool(PROCESSES_COUNT) as pool:
                for index, result in pool.imap_unordered(_invocation, range(invocations)):
                    results[index] = result
        return results  # type: ignore
    finally:
        IS_MAIN_PROCESS = True
        PARALLEL_FUNCTION = None


def _invocation(index: int) -> Tuple[int, Any]:
    global IS_MAIN_PROCESS
    if IS_MAIN_PROCESS is None:
        IS_MAIN_PROCESS = os.getpid() == MAIN_PROCESS_PID
        assert not IS_MAIN_PROCESS

        global PROCESS_INDEX
        with NEXT_PROCESS_INDEX:
            PROCESS_INDEX = NEXT_PROCESS_INDEX.value  # type: ignore
            NEXT_PROCESS_INDEX.value += 1  # type: ignore

        current_thread().name = f"#{MAP_INDEX}.{PROCESS_INDEX}"
        utm.in_parallel_map(MAP_INDEX, PROCESS_INDEX)

        global PROCESSORS_COUNT
        start_processor_index = int(round(PROCESSORS_COUNT * PROCESS_INDEX / PROCESSES_COUNT))
        stop_processor_index = int(round(PROCESSORS_COUNT * (PROCESS_INDEX + 1) / PROCESSES_COUNT))
        PROCESSORS_COUNT = max(stop_processor_index - start_processor_index, 1)

        utl.logger().debug("PROCESSORS: %s", PROCESSORS_COUNT)
        threadpool_limits(limits=PROCESSORS_COUNT)

    assert PARALLEL_FUNCTION is not None
    return index, PARALLEL_FUNCTION(index)
