"""Composition cost resolution and read-only catalogue queries."""

from sinapicalc.resolution.engine import CostResolver

__all__ = ["CostResolver"]
