"""auth/ -- Identity, session and authorization package for EduCheck.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, student/, or cache/.
api/ imports from auth/, not the other way around.
"""
