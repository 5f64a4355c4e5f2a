"""Operator-facing CLI surface."""
