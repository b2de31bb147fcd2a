"""
Feature modules: ``documents`` (routing and execution), ``audit_mode``
(inspection lock) and ``journals`` (guarded journal writes).

Each module owns its models, service functions and JSON blueprint. Platform
pieces such as auth, RBAC, the audit trail, storage and the DB session live
one level up in ``app.qdocs``.
"""
