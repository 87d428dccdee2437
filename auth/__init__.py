"""auth/ -- Authentication and authorization package for authcore.

Layer rule: auth/ imports from core/ (config, clock) and third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
