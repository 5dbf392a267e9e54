"""Spreadsheet and flat-file parsing for SINAPI data."""
