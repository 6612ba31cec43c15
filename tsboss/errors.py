from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid classifier or dataset configuration (class column misplaced, bad word length, ...)."""


class CheckpointError(RuntimeError):
    """A checkpoint record on disk is not of the expected kind or format version."""
