"""Risk governor and position sizing."""
