"""Resumable issue-to-PR automation driven by an external coding agent."""

__version__ = "0.4.0"
