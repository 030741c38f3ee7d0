"""Exchange market data and order access."""
