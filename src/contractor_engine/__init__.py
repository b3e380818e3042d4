"""Contractor grade engine and urgent-fee escalation scheduler."""

__version__ = "0.1.0"
