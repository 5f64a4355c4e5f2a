"""Integration tests for delivery-autopilot."""
