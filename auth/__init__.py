"""auth/ -- Authentication and authorization package for TenantGuard.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
The exceptions are auth/login.py, which records audit events, and
auth/dependencies.py, which builds AuditContext for routes.
api/ imports from auth/, not the other way around.
"""
