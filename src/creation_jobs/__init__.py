"""Background job orchestration for the creation pipeline."""

__version__ = "0.1.0"
