"""Watches, job events, an event receiver, input directories and ansible-runner invocation."""

__version__ = "0.1.0"
__all__ = ["watches", "events", "eventapi", "inputdir", "runner", "fake"]