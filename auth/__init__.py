"""auth/ -- Identity, token, session and invitation core for LedgerGate.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. The cache store is injected into the
session manager and token service; cache/ is referenced for type hints only.
api/ imports from auth/, not the other way around.
"""
