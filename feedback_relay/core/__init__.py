"""Shared building blocks: error taxonomy and timing helpers."""
