"""auth/ -- Credential, session and access-control core for Gatehouse.

Layer rule: auth/ imports stdlib, third-party libraries and core/config only.
It does NOT import from api/. api/ imports from auth/, not the other way around.

Entry point for hosts: auth.manager.build_auth_manager().
"""
