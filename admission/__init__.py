"""admission/ -- Per-client request budgets checked before business logic.

Layer rule: admission/ imports only core/ + third-party libraries. It is
HTTP-agnostic: api/interceptors.py adapts it to FastAPI requests.
"""
