"""Streaming response assembler for research agent conversations."""

__version__ = "0.1.0"
