"""Attribute mapping from IdP assertions to session attributes.

Mapping is data-driven: a table of ``AttributeRule`` entries names the
source attribute, the target key, an optional value transform and a default.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

Transform = Callable[[list[str]], list[str]]

# Well-known attribute names and the friendly keys they map to
WELL_KNOWN_ATTRIBUTES: dict[str, str] = {
    "urn:oid:0.9.2342.19200300.100.1.1": "uid",
    "urn:oid:0.9.2342.19200300.100.1.3": "mail",
    "urn:oid:2.5.4.3": "cn",
    "urn:oid:2.5.4.4": "sn",
    "urn:oid:2.5.4.42": "givenName",
    "urn:oid:2.16.840.1.113730.3.1.241": "displayName",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.1": "eduPersonAffiliation",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.6": "eduPersonPrincipalName",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.7": "eduPersonEntitlement",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.9": "eduPersonScopedAffiliation",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress": "mail",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/name": "cn",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenname": "givenName",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/surname": "sn",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/upn": "upn",
    "http://schemas.microsoft.com/ws/2008/06/identity/claims/groups": "groups",
    "http://schemas.microsoft.com/ws/2008/06/identity/claims/role": "role",
}


def lowercase(values: list[str]) -> list[str]:
    """Lowercase every value."""
    return [v.lower() for v in values]


def strip_scope(values: list[str]) -> list[str]:
    """Drop the ``@scope`` suffix of scoped values."""
    return [v.split("@", 1)[0] for v in values]


@dataclass(frozen=True)
class AttributeRule:
    """Maps one source attribute onto a session attribute."""

    source: str
    target: str
    transform: Transform | None = None
    default: tuple[str, ...] | None = None

    def apply(self, attributes: dict[str, list[str]]) -> list[str] | None:
        """Mapped values, the default, or None when neither applies."""
        values = attributes.get(self.source)
        if not values:
            return list(self.default) if self.default is not None else None
        return self.transform(list(values)) if self.transform else list(values)


DEFAULT_RULES: tuple[AttributeRule, ...] = tuple(
    AttributeRule(source=source, target=target) for source, target in WELL_KNOWN_ATTRIBUTES.items()
)


class AttributeMapper:
    """Applies an ordered table of rules to assertion attributes."""

    def __init__(
        self,
        rules: tuple[AttributeRule, ...] | list[AttributeRule] = DEFAULT_RULES,
        keep_unmapped: bool = True,
    ) -> None:
        """Initialize the mapper.

        Args:
            rules: Mapping rules, applied in order. Later rules append to
                targets already filled by earlier ones.
            keep_unmapped: Copy attributes no rule mentions under their own name.
        """
        self._rules = tuple(rules)
        self._keep_unmapped = keep_unmapped

    def map(self, attributes: dict[str, list[str]]) -> dict[str, list[str]]:
        """Map assertion attributes to session attributes, preserving order."""
        result: dict[str, list[str]] = {}
        mapped_sources = {rule.source for rule in self._rules}

        for rule in self._rules:
            values = rule.apply(attributes)
            if values is None:
                continue
            target = result.setdefault(rule.target, [])
            target.extend(v for v in values if v not in target)

        if self._keep_unmapped:
            for name, values in attributes.items():
                if name not in mapped_sources and name not in result:
                    result[name] = list(values)
        return result
