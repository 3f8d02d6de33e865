"""ConsentFlow service layer.

Nothing is re-exported here; import submodules directly, e.g.
``from consentflow.services.audit_trail import AuditTrail``.
"""
