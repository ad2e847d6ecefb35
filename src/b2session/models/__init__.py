"""Wire and record models for the native storage API."""
