"""REST API for the workflow core."""
