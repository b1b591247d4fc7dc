# src/emvs/errors.py
from __future__ import annotations


class EmvsError(Exception):
    """Base class for errors raised by the mapping core."""


class PreconditionError(EmvsError, ValueError):
    """Bad input from upstream or from configuration. The offending update is rejected."""


class PoseError(PreconditionError):
    pass


class GeometryError(EmvsError, RuntimeError):
    """A numerical degeneracy (e.g. a homography that cannot be inverted)."""


class StateError(EmvsError, RuntimeError):
    """An operation was called in a lifecycle state that does not allow it."""
