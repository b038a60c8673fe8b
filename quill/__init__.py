"""Quill: out-of-process turn execution engine for coding agents."""

__version__ = "0.1.0"
