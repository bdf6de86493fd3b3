"""Command line interface for rumflow."""
