"""Core infrastructure: configuration, logging and checkpoint persistence."""
