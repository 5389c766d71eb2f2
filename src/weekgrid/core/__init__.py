"""Core infrastructure shared by the calendar engine: state store, logging, telemetry."""
