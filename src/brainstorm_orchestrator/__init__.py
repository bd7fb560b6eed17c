"""Brainstorm Orchestrator - supervised multi-agent brainstorming workflows."""

__version__ = "0.1.0"
