"""
Quote.Vote Pod Sync - Solid Pod connection service

This module implements the Pod connection subsystem for Quote.Vote. It lets a user link
an external Solid Pod to their profile, authorize access with OAuth 2.0 / OpenID Connect
and PKCE, and synchronize a small portable document set between the application and the
user's Pod.

Key Components:
- oidc: Issuer discovery, the PKCE authorization flow, and pending authorization state
- storage: Authenticated encryption of token bundles stored at rest
- client: Authenticated HTTP client for Pod resources with refresh and retry-once on 401
- sync: Portable state schemas and pull / push / append operations
- model: Database models for Pod connections and the persistence interface
- app: Web application layer, configuration, metrics, and command line utilities

Architecture Overview:
1. Connection Flow:
   - User supplies an issuer URL or WebID
   - Service discovers the issuer and redirects to its authorization endpoint
   - Authorization code is exchanged for tokens which are encrypted and stored

2. Resource Access:
   - Access tokens are decrypted on demand and refreshed before they expire
   - A 401 from the Pod triggers exactly one forced refresh and retry

3. Portable State:
   - Profile and preferences are merged field by field on push
   - The optional activity ledger is append-only and feature flagged
"""
