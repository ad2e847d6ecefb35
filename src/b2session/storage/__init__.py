"""Local filesystem helpers."""
