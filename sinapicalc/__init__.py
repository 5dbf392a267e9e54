"""sinapicalc - SINAPI cost-reference ingestion and composition cost resolution."""

__version__ = "0.1.0"
