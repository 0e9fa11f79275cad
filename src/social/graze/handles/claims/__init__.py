"""
Domain Claims

This package implements the mapping between claimed domains and the DIDs they resolve to.

Key Components:
- matcher.py: DomainAuthorizationMatcher, the wildcard allow-list for public claims
- registry.py: ClaimRegistry, which enforces one DID per domain and one domain per DID
- persistence.py: Binding stores (JSON file, PostgreSQL)

Claim flow:
1. Public claims must match the allow-list; admin claims skip it
2. The domain must not already be bound
3. The handle or DID is resolved to a canonical DID
4. On the public path the DID must not already hold a domain
5. The binding is written through to the store
"""
