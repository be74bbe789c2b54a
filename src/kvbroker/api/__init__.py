"""HTTP surface: health, queue stats and metrics."""
