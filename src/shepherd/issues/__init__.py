from shepherd.issues.base import Issue, IssueStatus, IssueStore, IssueStoreError
from shepherd.issues.beads import BeadsIssueStore
from shepherd.issues.memory import InMemoryIssueStore

__all__ = [
    "BeadsIssueStore",
    "InMemoryIssueStore",
    "Issue",
    "IssueStatus",
    "IssueStore",
    "IssueStoreError",
]
