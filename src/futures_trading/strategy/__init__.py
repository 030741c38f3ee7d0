"""Signal scoring."""
