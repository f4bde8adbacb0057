"""Shared normalization and blocking-call helpers."""
