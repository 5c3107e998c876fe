"""Frontend telemetry transport and error aggregation."""
