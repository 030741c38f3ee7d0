"""Journal and persisted state."""
