"""Shared utilities: logging, configuration persistence and worker threads."""
