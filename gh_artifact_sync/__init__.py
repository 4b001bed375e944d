"""
gh-artifact-sync keeps a local mirror of the newest GitHub Actions artifact
for one branch, updated by webhook deliveries and exposed through an
atomically swapped symlink.
"""

__version__ = "0.1.0"

__all__ = [
    "config",
    "coordinator",
    "client",
    "publisher",
    "retention",
    "server",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
