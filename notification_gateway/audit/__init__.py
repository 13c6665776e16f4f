from .service import AuditCategory, AuditService

__all__ = ["AuditCategory", "AuditService"]
