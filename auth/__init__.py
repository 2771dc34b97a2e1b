"""auth/ -- Credential validation and authorization package for Gatekeeper.

Authenticators (API keys, bearer tokens, OIDC, managed users, LDAP) all raise
auth.errors.AuthenticationError with a CauseType on failure and expose
is_specified() for "no credential presented".

Layer rule: auth/ may import from core/ (the kernel). Only
auth/dependencies.py imports fastapi. core/ and cache/ never import from auth/.
"""
