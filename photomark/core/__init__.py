"""
Core Annotation and Request Orchestration
=========================================

This package contains the foundational logic for Photomark: viewport
geometry, the annotation store, request building, response classification,
rate limiting and the dispatch orchestrator.
"""
