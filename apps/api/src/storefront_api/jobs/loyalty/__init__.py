"""Loyalty job exports."""

from .expiry import run_points_expiry  # noqa: F401

__all__ = ["run_points_expiry"]
