"""
delivery-autopilot — unattended control core for a stage-gated delivery pipeline.

The package drives one project at a time through a fixed sequence of delivery
stages, resuming from checkpoints, coordinating with other processes through
an advisory workspace lock, and escalating recovery when progress stalls.

Importing the package has no side effects: configuration and logging are
initialised by the CLI entrypoint.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
