"""REST API for the dormitory electricity dashboard."""
