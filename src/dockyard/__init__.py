"""Dockyard: sandbox session orchestrator for remote AI coding agents."""

__version__ = "0.1.0"
