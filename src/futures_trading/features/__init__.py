"""Indicator computation."""
