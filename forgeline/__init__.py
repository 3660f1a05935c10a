"""
FORGELINE — an orchestration engine for autonomous coding-agent runs.

Features are admitted from a backlog under a concurrency limit, each
executed in its own git worktree, with plan approval and dependency
ordering between them.
"""

from forgeline.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
