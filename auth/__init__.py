"""auth/ -- Credential authentication and role authorization for JYDoc.

Layer rule: auth/ imports from core/ and third-party libraries only.
It does NOT import from api/; sessions/ is referenced for type checking only.
api/ and sessions/ import from auth/, not the other way around.
"""
