"""Eval harness for the CEP diagnostic chat service."""

__version__ = "0.1.0"
