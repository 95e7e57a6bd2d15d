"""Exceptions raised on broken pipeline contracts.

Recoverable estimation failures (too few matches, residual too high, ...)
are never raised: they are reported through return values. The exceptions
below signal caller or programming errors that must abort the operation.
"""


class PreconditionError(RuntimeError):
    """A caller contract was violated (missing calibration, frame, depth...)."""


class FrameMismatchError(PreconditionError):
    """A pose was used in a camera frame other than the one it is tagged with."""
