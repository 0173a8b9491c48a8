"""Distributed benchmark harness for a content-addressed block exchange."""

__version__ = "0.1.0"
