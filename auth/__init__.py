"""auth/ -- Authentication core for Anchor.

Local password login, the access/refresh token pair lifecycle, and the OIDC
authorization-code + PKCE flow with one-time exchange codes.

Layer rule: auth/ imports only stdlib + third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
