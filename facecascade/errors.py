# facecascade/errors.py
from __future__ import annotations
from typing import Optional


class CascadeError(Exception):
    pass


class ContractViolation(CascadeError):
    """Model tensors do not match what the stage expects."""
    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage
        # partial FrameResult when raised from FacePipeline.process
        self.result = None


class IndexOutOfRange(CascadeError, IndexError):
    """decode() asked for a slot outside the last submitted batch."""


class UnknownStage(CascadeError, KeyError):
    """Latency lookup for a name that was never started."""
    def __str__(self):
        # KeyError repr-quotes its argument
        return str(self.args[0]) if self.args else ""
