"""Pullpreview test suite."""
