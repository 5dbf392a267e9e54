"""Shared record types for the SINAPI ingestion pipeline."""
