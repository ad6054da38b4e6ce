"""
Generic utilities used by the scqc code.

Arguably all(most) of these belong in more general package(s).

All the functions included here are exported under ``scqc.ut``.
"""

from .annotation import *  # pylint: disable=redefined-builtin
from .computation import *
from .documentation import *
from .errors import *
from .logging import *
from .parallel import *
from .partition import *
from .timing import *
from .typing import *
