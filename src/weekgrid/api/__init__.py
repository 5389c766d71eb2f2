"""HTTP API for the weekgrid calendar."""
