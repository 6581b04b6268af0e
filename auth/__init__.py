"""auth/ -- Operator credentials, tokens, refresh-token ledger and sessions.

Layer rule: auth/ imports from core/ and audit/ (SessionService writes the
audit trail) plus third-party libraries. It does NOT import from api/ or
admission/. api/ imports from auth/, not the other way around.
"""
