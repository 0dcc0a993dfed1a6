from __future__ import annotations


class PorchError(RuntimeError):
    """Base class for every error the engine raises on purpose."""


class ProtocolError(PorchError):
    """Raised when a protocol definition is missing or structurally invalid."""


class PorchStateError(PorchError):
    """Raised when project state cannot be read, locked, or transitioned."""


class PlanError(PorchError):
    """Raised when a required plan artifact is missing."""


class GateApprovalError(PorchError):
    """Raised when a gate approval lacks the explicit human flag."""


class ChecksFailedError(PorchError):
    """Raised when a phase check fails and the phase cannot be completed."""


class BuildCircuitOpenError(PorchError):
    """Raised when consecutive build failures reach the circuit breaker threshold."""
