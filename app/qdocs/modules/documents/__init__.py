"""
Document workflow module.

- A document is created together with its full ordered route of stages
- Stages become Tasks; only the task at the document's cursor is actionable
- After the route resolves, the work fans out to execution assignees
- Every mutation is recorded to the append-only audit trail
"""
