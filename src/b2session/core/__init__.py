"""Configuration, logging, errors and digests shared by every component."""
