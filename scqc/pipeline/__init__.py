"""
Default QC pipeline.

The functions here are thin wrappers which invoke a series of steps (:py:mod:`scqc.tools`) to
provide a complete pipeline for cleaning and normalizing your data.

All the functions included here are exported under ``scqc.pl``.
"""

from .clean import *
from .complete import *
from .normalize import *
