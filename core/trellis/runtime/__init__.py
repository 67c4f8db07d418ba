"""Runtime services: event bus and streams."""
