"""Execution gateways."""
