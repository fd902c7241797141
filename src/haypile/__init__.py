"""Pika haypile survey analysis."""

__version__ = "0.1.0"
