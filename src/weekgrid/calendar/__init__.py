"""Calendar engine: aggregation, slot finding, plan-block lifecycle, drag and sync."""
