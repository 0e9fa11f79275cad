"""
Expiring Key-Value Stores

This package holds the TTL stores used to carry OAuth state and sessions across the shredder
login round trip.

Key Components:
- ttl.py: The TTLStore interface, the in-memory implementation with lazy eviction and a
  periodic sweep, and a Redis implementation that relies on key expiry

Two stores exist at runtime, one for OAuth *state* (authorize -> callback) and one for
*session* data (after login). Both share the same eviction rules and have independently
configured TTLs. Entries are not durable; a restart forgets every in-flight login.
"""
