"""audit/ -- Append-only trail of security-relevant state changes.

Layer rule: audit/ imports only core/ + third-party libraries. It does NOT
import from api/, auth/, or admission/.
"""
