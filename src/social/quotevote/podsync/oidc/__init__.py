"""
Solid OIDC

Client side of Solid-OIDC for connecting a user's Pod.

Key Components:
- discovery.py: Issuer metadata discovery, from an issuer URL or a WebID
- authorization.py: PKCE authorization URL, code exchange, token refresh, ID token claims
- state.py: Redis store binding ``state`` to the pending authorization between redirects
"""
