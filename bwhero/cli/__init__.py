"""Command-line interface for bwhero."""
