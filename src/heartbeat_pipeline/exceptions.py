"""Errors raised by the heartbeat extraction pipeline."""

from typing import Sequence


class PipelineError(Exception):
    """Base class for pipeline failures the caller is expected to handle."""


class NoCandidatesDetected(PipelineError):
    """No beat candidate survived detection, even after relaxing the threshold."""

    def __init__(self, threshold: float, max_height: float):
        self.threshold = threshold
        self.max_height = max_height
        super().__init__(
            f"No beat candidates above threshold {threshold:.4g} "
            f"(highest detection peak: {max_height:.4g}). Adjust THRESHOLD."
        )


class AmbiguousSamplingRate(PipelineError):
    """A single recording declares more than one sampling rate."""

    def __init__(self, rates: Sequence[float], source: str = ""):
        self.rates = list(rates)
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(f"Multiple sampling rates found{where}: {self.rates}")


class InvalidFilterBand(PipelineError, ValueError):
    """Band-pass cutoffs are inconsistent or exceed the Nyquist frequency."""

    def __init__(self, low: float, high: float, nyquist: float):
        self.low = low
        self.high = high
        self.nyquist = nyquist
        super().__init__(
            f"Invalid band-pass {low}-{high} Hz: need 0 < low < high < {nyquist:g} Hz (Nyquist)"
        )
