"""Bacchus - worktree-per-bead coordination for concurrent agents."""

__version__ = "0.1.0"

__all__ = ["__version__"]
