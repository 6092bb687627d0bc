"""Specflow: conversational planning and sandboxed execution of code changes."""

__version__ = "0.1.0"
