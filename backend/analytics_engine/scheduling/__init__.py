"""Trigger scheduling and the worker pool."""
