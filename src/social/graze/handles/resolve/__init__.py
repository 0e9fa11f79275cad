"""
Identity Resolution

This package resolves AT Protocol identifiers (DIDs, handles) to their canonical forms.

Key Components:
- handle.py: DNS and HTTP handle resolution, DID document retrieval
- identity.py: IdentityResolver, the handle-or-DID to canonical DID step used by claims
- __main__.py: CLI interface for resolution

Resolution Types:
1. Handle Resolution
   - DNS-based resolution via TXT records (_atproto.{handle})
   - HTTP-based resolution via well-known endpoints (.well-known/atproto-did)

2. DID Resolution
   - did:plc method resolution via PLC directory
   - did:web method resolution via well-known endpoints

Any input starting with `did:` is treated as a DID and must have a DID document. Everything
else is treated as a handle and must point at a DID.
"""
