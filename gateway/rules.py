"""
gateway.rules
~~~~~~~~~~~~~
CIDR rule sets and the reject-path list, built once from the comma-separated
configuration strings:

ACCEPT_SOURCE_IPS=10.20.30.0/24,209.171.0.0/16
DENY_SOURCE_IPS=192.168.0.0/16,1.2.3.4
DENY_URL_PATHS=admin,actuator      (or %%%MATCH_ALL_PATHS%%%)
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Tuple, Union

log = logging.getLogger(__name__)

MATCH_ALL_PATHS = "%%%MATCH_ALL_PATHS%%%"

# 255.255.255.255 is never a real client, so an unconfigured list matches nothing.
NONROUTABLE = "255.255.255.255/32"

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
RawList = Union[str, Iterable[str], None]


class InvalidRuleError(ValueError):
    """A configured CIDR token could not be parsed."""

    def __init__(self, token: str, reason: str):
        self.token = token
        self.reason = reason
        super().__init__(f"Invalid rule {token!r}: {reason}")


@dataclass(frozen=True, slots=True)
class SubnetRule:
    network: IPNetwork

    @classmethod
    def parse(cls, token: str) -> "SubnetRule":
        """Parse ``addr`` or ``addr/prefix``; a bare address is an exact host rule."""
        token = token.strip()
        addr_txt, _, prefix_txt = token.partition("/")
        try:
            addr = ipaddress.ip_address(addr_txt.strip())
        except ValueError:
            raise InvalidRuleError(token, "address is not an IP literal") from None

        if "/" not in token:
            prefix = addr.max_prefixlen
        else:
            prefix_txt = prefix_txt.strip()
            if not (prefix_txt.isascii() and prefix_txt.isdigit()):
                raise InvalidRuleError(token, "prefix is not a non-negative integer")
            prefix = int(prefix_txt)
            if prefix > addr.max_prefixlen:
                raise InvalidRuleError(
                    token, f"prefix exceeds {addr.max_prefixlen} for IPv{addr.version}"
                )

        return cls(ipaddress.ip_network((addr, prefix), strict=False))

    @property
    def base_address(self) -> IPAddress:
        return self.network.network_address

    @property
    def prefix_length(self) -> int:
        return self.network.prefixlen

    def matches(self, ip: IPAddress) -> bool:
        # IPv4 and IPv6 never cross-match
        return ip.version == self.network.version and ip in self.network

    def __str__(self) -> str:
        return str(self.network)


@dataclass(frozen=True, slots=True)
class RuleSet:
    rules: Tuple[SubnetRule, ...]

    def __iter__(self) -> Iterator[SubnetRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def first_match(self, ip: IPAddress) -> SubnetRule | None:
        for rule in self.rules:
            if rule.matches(ip):
                return rule
        return None

    def matches(self, ip: IPAddress) -> bool:
        return self.first_match(ip) is not None


@dataclass(frozen=True, slots=True)
class RejectPathList:
    """Lower-cased path segments; empty disables the path override."""

    paths: Tuple[str, ...] = ()

    @property
    def enabled(self) -> bool:
        return bool(self.paths)

    @property
    def match_all(self) -> bool:
        return MATCH_ALL_PATHS.lower() in self.paths

    def matching(self, segment: str) -> str | None:
        """Return the configured entry that rejects *segment*, if any."""
        if self.match_all:
            return MATCH_ALL_PATHS
        segment = segment.lower()
        return segment if segment in self.paths else None


def _tokens(raw: RawList) -> Iterator[str]:
    if raw is None:
        return
    if isinstance(raw, str):
        raw = [raw]
    for item in raw:
        for tok in item.split(","):
            tok = tok.strip()
            if tok:
                yield tok


def build_rules(raw: RawList) -> RuleSet:
    """Build a RuleSet, preserving token order.

    Raises InvalidRuleError on the first token that does not parse; no rule
    is ever silently dropped.
    """
    rules = [SubnetRule.parse(tok) for tok in _tokens(raw)]
    if not rules:
        rules = [SubnetRule.parse(NONROUTABLE)]
    for rule in rules:
        log.info("Rule: %s", rule)
    return RuleSet(tuple(rules))


def build_reject_paths(raw: RawList) -> RejectPathList:
    seen: list[str] = []
    for tok in _tokens(raw):
        tok = tok.lower()
        if tok not in seen:
            seen.append(tok)
    return RejectPathList(tuple(seen))
