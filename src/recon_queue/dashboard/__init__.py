"""Live worker and project dashboard."""
