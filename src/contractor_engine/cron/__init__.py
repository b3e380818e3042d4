"""Cron-safe entry points."""
