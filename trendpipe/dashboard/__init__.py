"""HTTP API consumed by schedulers and the dashboard."""
