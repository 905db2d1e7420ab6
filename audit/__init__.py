"""audit/ -- Append-only security audit trail for CampusGuard.

Layer rule: audit/ imports only stdlib, third-party libraries, and core/.
It does NOT import from auth/ or api/. auth/ records into audit/, and api/
reads from it; never the other way around.
"""
