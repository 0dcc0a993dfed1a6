"""Protocol orchestration engine for multi-phase, review-gated development."""

__version__ = "0.1.0"
