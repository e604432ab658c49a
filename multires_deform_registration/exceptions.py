# -*- coding: utf-8 -*-
"""
Exception hierarchy for multi-resolution registration.

Every error raised by this package derives from RegistrationError and,
where it makes sense, from the closest builtin so that generic handlers
(``except ValueError``) keep working.

Classes
-------
- RegistrationError: Base class
- ConfigurationError: Malformed setup, detected before any level runs
- ResourceUnavailable: A collaborator failed to produce a level/result
- OutOfBoundsSample: A strict sample fell outside an image domain
- NumericalInstability: Divergence in a linear solve
- GridMismatch: A field does not live on the grid it is used with
- RegistrationCancelled: Cooperative cancellation was observed
"""

from typing import Optional


class RegistrationError(Exception):
    """Base class for all registration errors."""


class ConfigurationError(RegistrationError, ValueError):
    """Malformed setup (mismatched lengths, zero levels, missing collaborator)."""


class ResourceUnavailable(RegistrationError, RuntimeError):
    """A pyramid, metric or interpolator could not produce a required result."""


class OutOfBoundsSample(RegistrationError, LookupError):
    """
    A queried point lies outside an image's domain.

    Only raised by strict single-point sampling; the force evaluator
    absorbs it and reports a zero force instead.
    """

    def __init__(self, point, message: Optional[str] = None):
        self.point = point
        if message is None:
            message = f"Point {tuple(point)} is outside the image domain"
        super().__init__(message)


class NumericalInstability(RegistrationError, ArithmeticError):
    """Non-finite or excessive displacement increment."""


class GridMismatch(RegistrationError, ValueError):
    """A deformation field does not match its reference grid."""


class RegistrationCancelled(RegistrationError):
    """Raised at a level or iteration boundary after cancel() was called."""
