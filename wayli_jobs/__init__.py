"""Wayli background job queue and worker coordination."""

__version__ = "1.0.0"
