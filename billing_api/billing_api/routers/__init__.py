"""API routers for the add-on billing service."""
