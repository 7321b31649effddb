"""Autonomous work orchestration for dependency-aware backlogs."""

__version__ = "0.1.0"
