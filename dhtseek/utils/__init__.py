"""Shared utilities: errors, logging and task tracking."""
