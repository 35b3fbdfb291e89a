"""Shared helpers: paths, logging, money rounding."""
