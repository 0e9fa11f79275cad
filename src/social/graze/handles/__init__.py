"""
atproto-handle - Domain Claims for AT Protocol Identities

This module implements a service that lets a domain owner "claim" a domain by binding it to an
AT Protocol DID. Visiting a claimed domain redirects to the identity's profile, and the
`/.well-known/atproto-did` endpoint answers handle verification for the domain. Identity holders
can later release every domain bound to their DID through an OAuth login ("shredder").

Key Components:
- app: Web application layer with request handlers and server configuration
- atproto: OAuth client for the AT Protocol authorization servers used by the shredder
- claims: Claim registry, domain authorization matcher and binding persistence
- model: Database models for the optional database binding store
- resolve: Identity resolution utilities for AT Protocol DIDs and handles
- shredder: The login round trip that releases a DID's bindings
- store: Expiring key-value stores for OAuth state and sessions

Architecture Overview:
1. Claiming:
   - Public claims are gated by a wildcard allow-list, admin claims by an API key
   - Handles and DIDs are resolved to a canonical DID before anything is written
   - A domain holds one DID, and a DID holds one domain (public path)

2. Shredding:
   - The identity holder logs in with their handle
   - OAuth state and sessions live in TTL stores for the length of the round trip
   - A successful login releases all domains bound to the DID
"""
