"""
Cloud Doctor

Compares monthly spend, shows six-month cost trends and finds idle resources
across AWS, GCP and Azure from one command.
"""

__version__ = "1.0.0"
__author__ = "Cloud Doctor Team"
