"""REST API for the dashboard frontend."""
