"""Position lifecycle engine, scheduling and events."""
