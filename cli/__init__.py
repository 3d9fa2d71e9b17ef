"""Wayli Jobs CLI"""

__version__ = "1.0.0"
