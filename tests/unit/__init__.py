"""Unit tests for AppReader."""
