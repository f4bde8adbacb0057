"""Collection, orchestration and comparison services."""
