"""API routers for sinapicalc."""
