"""
Issue Lifecycle Module
======================

Bounded context for civic issue reports and their SLA escalation.

Responsibilities:
- Fix an SLA deadline per issue at creation from its priority
- Validate every status change against one workflow table
- Keep an append-only state history
- Escalate overdue issues one level at a time (periodic sweep)
- Deduplicate citizen upvotes and accept one rating per resolved issue
"""
