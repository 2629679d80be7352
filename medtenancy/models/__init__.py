from .tenant import Tenant, TenantDomain, TenantStatus, TenantType, VerificationStatus

__all__ = [
    "Tenant",
    "TenantDomain",
    "TenantStatus",
    "TenantType",
    "VerificationStatus",
]
