"""auth/ -- Authentication and session lifecycle core of the identity service.

Layer rule: auth/ imports only stdlib + third-party libraries and itself.
It does NOT import from api/ or core/; configuration values arrive through
constructors. api/ and main.py import from auth/, not the other way around.
"""
