"""Pullpreview - per-pull-request preview deployments."""

__version__ = "0.1.0"
