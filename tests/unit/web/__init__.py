"""Unit tests for sinapicalc web route modules."""
