from shepherd.state.commits import CommitRecord, GitCommitter
from shepherd.state.store import StateStore

__all__ = ["CommitRecord", "GitCommitter", "StateStore"]
