"""
Shredder

Self-service release of domain bindings. A DID holder logs in with their AT Protocol account and
every domain bound to that DID is released.
"""
