from .issues import InvariantError, Issue, IssueKind, IssueLog, check

__all__ = ["InvariantError", "Issue", "IssueKind", "IssueLog", "check"]
