"""Tools for capturing, searching for SEI payloads in, and slicing MPEG transport streams."""

__version__ = "0.1.0"