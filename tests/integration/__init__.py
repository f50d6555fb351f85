"""Integration tests for AppReader."""
