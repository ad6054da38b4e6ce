"""
Quality control and normalization of single-cell RNA sequencing count matrices.
"""

__author__ = "scqc developers"
__version__ = "0.1.0"

# pylint: disable=wrong-import-position

from . import pipeline as pl
from . import tools as tl
from . import utilities as ut
