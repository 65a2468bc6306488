"""Stage admission and job orchestration for the creative production pipeline."""

__version__ = "0.4.0"
