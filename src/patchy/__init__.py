"""Build a branch from upstream pull requests, fork branches and local patches."""

__version__ = "0.1.0"
