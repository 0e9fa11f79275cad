"""Wildcard allow-list for public domain claims."""

import re
from typing import Iterable, List, Pattern


def normalize_domain(domain: str) -> str:
    """
    Canonical form of a domain name: trimmed, lower-cased, without a port or trailing dot.
    """
    domain = domain.strip().lower()
    if domain.startswith("[") or domain.count(":") > 1:
        # IPv6 literals are never claimable; leave them untouched.
        return domain
    domain = domain.split(":", 1)[0]
    return domain.rstrip(".")


def compile_pattern(pattern: str) -> Pattern[str]:
    """
    Compile one wildcard pattern.

    Each `*` matches one or more characters other than a dot, so a whole `*` label matches
    exactly one DNS label and `user-*` matches any label starting with `user-`. Everything else
    must match literally.
    """
    parts = [re.escape(part) for part in normalize_domain(pattern).split("*")]
    return re.compile("[^.]+".join(parts))


class DomainAuthorizationMatcher:
    """
    Decides whether a domain is open for public self-service claims.

    Patterns are compiled once at construction. `is_authorized` is pure.

    >>> matcher = DomainAuthorizationMatcher(["*.example.com"])
    >>> matcher.is_authorized("alice.example.com")
    True
    >>> matcher.is_authorized("a.b.example.com")
    False
    """

    def __init__(self, patterns: Iterable[str]) -> None:
        self.patterns: List[str] = [p for p in patterns if len(p.strip()) > 0]
        self._compiled = [compile_pattern(p) for p in self.patterns]

    def is_authorized(self, domain: str) -> bool:
        domain = normalize_domain(domain)
        if len(domain) == 0:
            return False
        return any(pattern.fullmatch(domain) is not None for pattern in self._compiled)
