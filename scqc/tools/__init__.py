"""
Functions for analysis tools.

Tools take as input a :py:class:`scqc.utilities.annotation.MatrixStore` and either return some
computed results, or write the results as new annotations within the same store, or return a new
store containing the results. Tools are meant to be composable into a complete processing
:py:mod:`scqc.pipeline`, typically by having one tool create annotation with "agreed upon" name(s)
and another further processing them.

All the functions included here are exported under ``scqc.tl``.
"""

from .clustering import *
from .filter import *
from .group import *
from .mask import *
from .metrics import *
from .named import *
from .normalize import *
from .outliers import *
from .properly_sampled import *
