"""
Audit mode (inspection lock).

While an audit session is open, audit-sensitive writes (journal edits,
document import) are refused with reason code ``audit_mode_lock`` and every
other audit event is tagged with the session id for later review.
"""
