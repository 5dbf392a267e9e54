"""Web transport for sinapicalc (FastAPI)."""
