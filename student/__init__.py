"""student/ -- Student-owned resources: favorites, search history, fraud reports.

Every query in this package is scoped by a principal id that the caller
obtained from a verified access token (auth/dependencies.py).

Layer rule: student/ imports from core/ and cache/ only.
It does NOT import from api/ or auth/.
"""
