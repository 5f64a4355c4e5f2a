"""Campaign control plane: driver, recovery planning, signals and telemetry."""
