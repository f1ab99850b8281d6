"""
auth/policy.py -- Allow/deny decisions for protected resource classes.

Three resource classes:
  PUBLIC         -- always allowed
  AUTHENTICATED  -- allowed iff the request resolved to a principal
  ROLE           -- allowed iff the principal holds the named authority
                    (exact string match; no role hierarchy)

Paths are mapped to rules by an ordered table. A pattern ending in "/**"
matches that prefix and everything below it; any other pattern matches the
exact path. The first matching entry wins. Paths that match nothing fall
back to AUTHENTICATED, so a newly added route is protected by default.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from auth.models import Principal


class Access(str, Enum):
    PUBLIC = "public"
    AUTHENTICATED = "authenticated"
    ROLE = "role"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class Rule:
    access: Access
    role: str | None = None

    def __post_init__(self) -> None:
        if (self.access is Access.ROLE) != (self.role is not None):
            raise ValueError("role is required for ROLE rules and only for them")


PUBLIC = Rule(Access.PUBLIC)
AUTHENTICATED = Rule(Access.AUTHENTICATED)


def role(name: str) -> Rule:
    return Rule(Access.ROLE, name)


def default_rules(admin_role: str = "ROLE_ADMIN") -> tuple[tuple[str, Rule], ...]:
    """The stock path table: public auth endpoints, admin area gated on admin_role."""
    return (
        ("/", PUBLIC),
        ("/home", PUBLIC),
        ("/error", PUBLIC),
        ("/api/v1/health", PUBLIC),
        ("/api/v1/auth/login", PUBLIC),
        ("/api/v1/auth/register", PUBLIC),
        ("/api/v1/auth/logout", PUBLIC),
        ("/api/public/**", PUBLIC),
        ("/docs/**", PUBLIC),
        ("/redoc", PUBLIC),
        ("/openapi.json", PUBLIC),
        ("/api/v1/admin/**", role(admin_role)),
    )


def decide(principal: Principal | None, rule: Rule) -> Decision:
    """Return ALLOW or DENY for principal (None = unauthenticated) under rule."""
    if rule.access is Access.PUBLIC:
        return Decision.ALLOW
    if principal is None:
        return Decision.DENY
    if rule.access is Access.AUTHENTICATED:
        return Decision.ALLOW
    return Decision.ALLOW if rule.role in principal.authority_names else Decision.DENY


class AuthorizationPolicy:
    """Path table + decide(). Build with a custom table to change the policy.

    Usage:
        policy = AuthorizationPolicy()
        policy.check(principal, "/api/v1/admin/users")   # Decision.DENY for ROLE_USER
    """

    def __init__(self, rules: Iterable[tuple[str, Rule]] | None = None, default: Rule = AUTHENTICATED) -> None:
        self.rules = tuple(rules) if rules is not None else default_rules()
        self.default = default

    def rule_for(self, path: str) -> Rule:
        for pattern, rule in self.rules:
            if pattern.endswith("/**"):
                prefix = pattern[:-3]
                if path == prefix or path.startswith(prefix + "/"):
                    return rule
            elif path == pattern:
                return rule
        return self.default

    def check(self, principal: Principal | None, path: str) -> Decision:
        return decide(principal, self.rule_for(path))
