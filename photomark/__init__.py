"""
Photomark
=========

Marker-guided AI photo editing: an annotation engine that keeps user markers
in canonical image space, and a dispatch pipeline that sends image + markers
to a generative endpoint with validation, retries, rate limiting,
single-flight deduplication and cancellation.
"""

__version__ = "0.1.0"
