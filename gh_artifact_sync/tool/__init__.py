"""Command line entry point for gh-artifact-sync."""
