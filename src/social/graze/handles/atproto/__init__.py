"""
AT Protocol Integration

This package provides the OAuth client used by the shredder login to prove control of a DID.

Key Components:
- oauth.py: Public OAuth client (PAR, PKCE, DPoP) backed by the state and session TTL stores
- chain.py: Middleware chain for outbound requests (DPoP proofs, metrics)
- pds.py: Authorization server discovery through the user's PDS

The authentication flow follows these steps:
1. Resolve the handle to a DID and PDS
2. Discover the authorization server from the PDS
3. Push the authorization request and redirect the user
4. Exchange the authorization code and check the token subject
"""
