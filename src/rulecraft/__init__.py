"""Rulecraft: author editor rules and sync them with GitHub repositories."""

__version__ = "0.1.0"
