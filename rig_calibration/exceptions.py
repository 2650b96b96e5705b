"""
Exception hierarchy for rig calibration.

Shape problems and numerical failures are raised. Insufficient data is not
an error: the solvers return a sentinel result instead.
"""

from typing import Optional


class CalibrationException(Exception):
    """
    Base class for all rig calibration errors.

    Carries a human-readable message and a details dict with the values
    that triggered the error, for logging.
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class SizeMismatchError(CalibrationException):
    """Raised when the hand and eye pose sequences differ in length."""

    def __init__(self, hand_count: int, eye_count: int,
                 message: str = "Input sizes of the pose sequences do not match"):
        super().__init__(
            f"{message} (hand={hand_count}, eye={eye_count})",
            details={'hand_count': hand_count, 'eye_count': eye_count}
        )
        self.hand_count = hand_count
        self.eye_count = eye_count


class ConsistencyError(CalibrationException):
    """
    Raised when multi-camera inputs are malformed.

    Common causes:
    - fewer than 3 reference points
    - a camera whose observation or weight list does not match the points
    - camera poses / matrices / observation sets of different lengths
    """

    def __init__(self, message: str, **details):
        super().__init__(message, details=details)


class CalibrationFailedError(CalibrationException):
    """
    Raised when a linear system cannot be solved.

    Covers rank-deficient stacked systems (e.g. all motions about one axis),
    non-finite solutions and degenerate point-pose bootstraps.
    """

    def __init__(self, stage: str, message: str = "Calibration failed",
                 rank: Optional[int] = None):
        text = f"{message} during {stage}"
        if rank is not None:
            text += f" (rank {rank})"
        super().__init__(text, details={'stage': stage, 'rank': rank})
        self.stage = stage
        self.rank = rank


class InvalidConfigurationError(CalibrationException):
    """Raised when a solver configuration value is out of range."""

    def __init__(self, field: str, value, message: str = "Invalid configuration"):
        super().__init__(f"{message}: {field}={value!r}",
                         details={'field': field, 'value': value})
        self.field = field
        self.value = value
