from .manager import Worktree, WorktreeManager

__all__ = ["Worktree", "WorktreeManager"]
