"""auth/ -- Identity, credential, token and authorization package for CampusGuard.

Layer rule: auth/ imports from core/ and audit/ (AuthorizationEngine and
AuthService write audit records). It does NOT import from api/.
api/ imports from auth/, not the other way around. auth/dependencies.py is
the only module here that knows about FastAPI.
"""
