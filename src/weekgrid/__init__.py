"""weekgrid: calendar aggregation and adaptive study-block scheduling."""

__version__ = "0.1.0"
