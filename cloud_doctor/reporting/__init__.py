"""Text and JSON rendering of aggregated reports."""
