"""Error taxonomy for the cryptic-site pipeline.

Every failure raised by the core carries a taxonomy ``tag`` and the
identifier of the unit of work that failed (a structure id for
pipeline runs, a generation number for training).  The core never
retries; retry policy belongs to the caller.

============================  ==========================================
Error                         Raised when
============================  ==========================================
:class:`DataError`            malformed or missing batch fields, or a
                              checkpoint that does not fit the network
:class:`IntegrityError`       shape/length mismatch between stages
:class:`DeviceError`          resource exhaustion, execution failure,
                              non-finite stage output
:class:`TrainingDivergenceError`  a generation's rewards collapse to
                              non-finite or degenerate values
============================  ==========================================
"""

from __future__ import annotations

from typing import Optional, Union

__all__ = [
    "CrypticScanError",
    "DataError",
    "IntegrityError",
    "DeviceError",
    "TrainingDivergenceError",
]


class CrypticScanError(Exception):
    """Base class for all tagged pipeline errors.

    Parameters
    ----------
    message : str
        Human-readable description.
    unit : str or int, optional
        Structure id or generation number that failed.
    stage : str, optional
        Pipeline stage that detected the failure.
    """

    tag: str = "CrypticScanError"

    def __init__(
        self,
        message: str,
        *,
        unit: Optional[Union[str, int]] = None,
        stage: Optional[str] = None,
    ):
        self.message = message
        self.unit = unit
        self.stage = stage
        super().__init__(self._format())

    def _format(self) -> str:
        where = []
        if self.unit is not None:
            where.append(f"unit={self.unit}")
        if self.stage is not None:
            where.append(f"stage={self.stage}")
        prefix = f"[{self.tag}]"
        if where:
            prefix += " " + " ".join(where)
        return f"{prefix}: {self.message}"

    def with_unit(self, unit: Union[str, int]) -> "CrypticScanError":
        """Return a copy of this error re-tagged with *unit*."""
        return type(self)(self.message, unit=unit, stage=self.stage)


class DataError(CrypticScanError):
    """Malformed or missing input data."""

    tag = "DataError"


class IntegrityError(CrypticScanError):
    """Internal shape or length mismatch between stages."""

    tag = "IntegrityError"


class DeviceError(CrypticScanError):
    """Resource exhaustion, execution failure, or non-finite output."""

    tag = "DeviceError"


class TrainingDivergenceError(CrypticScanError):
    """A generation's rewards are non-finite or degenerate."""

    tag = "TrainingDivergenceError"
