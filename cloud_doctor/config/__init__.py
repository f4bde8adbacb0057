"""Configuration loading for cloud-doctor."""
