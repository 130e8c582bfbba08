"""
gateway.decision
~~~~~~~~~~~~~~~~
Allow/reject verdict for one route-service request.

The engine walks the X-Forwarded-For chain in order.  The first address that
hits the accept list lets the request through.  The first address that hits
the deny list decides by path:

    reject-path list          request path        verdict
    ----------------          ------------        -------
    (empty)                   anything            REJECT
    %%%MATCH_ALL_PATHS%%%     anything            REJECT
    admin,actuator            /admin/...          REJECT
    admin,actuator            /public/...         ALLOW   <- deny IP overridden!

The last row is surprising but intentional: with a reject-path list
configured, a deny-listed address is only refused on those paths.  An address
found in neither list is allowed; the platform router in front of us is the
backstop.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence
from urllib.parse import unquote, urlsplit

from .config import Config
from .rules import (
    IPAddress,
    RejectPathList,
    RuleSet,
    build_reject_paths,
    build_rules,
)

log = logging.getLogger(__name__)

ROUTE_SERVICE_ALLOW = "ROUTE_SERVICE_ALLOW"
ROUTE_SERVICE_REJECT = "ROUTE_SERVICE_REJECT"

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class DecisionError(Exception):
    """Per-request problem; always turns into a REJECT, never a crash."""


class MissingHeaderError(DecisionError):
    def __init__(self, header: str):
        self.header = header
        super().__init__(f"No {header} header")


class MalformedTargetURLError(DecisionError):
    def __init__(self, url: str, reason: str = "not a valid URL"):
        self.url = url
        super().__init__(f"Forwarded URL {url!r} is {reason}")


@dataclass(frozen=True, slots=True)
class AccessPolicy:
    accept_rules: RuleSet
    deny_rules: RuleSet
    reject_paths: RejectPathList

    @classmethod
    def from_config(cls, cfg: Config) -> "AccessPolicy":
        """Build every rule set; InvalidRuleError propagates to abort startup."""
        return cls(
            accept_rules=build_rules(cfg.accept_source_ips),
            deny_rules=build_rules(cfg.deny_source_ips),
            reject_paths=build_reject_paths(cfg.deny_url_paths),
        )


@dataclass(frozen=True, slots=True)
class Decision:
    allowed: bool
    reason: str
    ip: Optional[str] = None
    path: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def candidate_ips(values: Optional[Sequence[str]]) -> list[str]:
    """Flatten the X-Forwarded-For values into an ordered address list."""
    if not values:
        raise MissingHeaderError("X-Forwarded-For")
    values = list(values)
    if "," in values[0]:
        # a comma-joined first value replaces the whole list
        values = values[0].split(",")
    ips = [v.strip() for v in values if v and v.strip()]
    if not ips:
        raise MissingHeaderError("X-Forwarded-For")
    return ips


def request_path(forwarded_url: Optional[str]) -> str:
    """First non-empty segment of the percent-decoded forwarding target path."""
    if not forwarded_url:
        raise MissingHeaderError("X-Cf-Forwarded-Url")
    if any(c.isspace() or ord(c) < 0x20 for c in forwarded_url):
        raise MalformedTargetURLError(forwarded_url)
    if _BAD_ESCAPE.search(forwarded_url):
        raise MalformedTargetURLError(forwarded_url, "carrying a bad percent-escape")
    try:
        parts = urlsplit(forwarded_url)
        parts.port  # raises on a non-numeric port
        path = unquote(parts.path, errors="strict")
    except ValueError as e:
        raise MalformedTargetURLError(forwarded_url, str(e)) from None
    return next((seg for seg in path.split("/") if seg), "")


def _parse_ip(candidate: str) -> IPAddress | None:
    try:
        return ipaddress.ip_address(candidate)
    except ValueError:
        return None


class DecisionEngine:
    def __init__(self, policy: AccessPolicy) -> None:
        self.policy = policy

    def decide(self, candidates: Optional[Sequence[str]], forwarded_url: Optional[str]) -> bool:
        """Return True to forward the request, False to answer 503."""
        return self.evaluate(candidates, forwarded_url).allowed

    def evaluate(self, candidates: Optional[Sequence[str]], forwarded_url: Optional[str]) -> Decision:
        policy = self.policy
        try:
            ips = candidate_ips(candidates)
            # an absent target is tolerated only while the path override is off
            if forwarded_url or policy.reject_paths.enabled:
                path = request_path(forwarded_url)
            else:
                path = None
        except DecisionError as e:
            log.debug("%s  %s, rejecting", ROUTE_SERVICE_REJECT, e)
            return Decision(False, str(e))

        for raw_ip in ips:
            ip = _parse_ip(raw_ip)
            if ip is None:
                log.debug("Skipping %r: not an IP address", raw_ip)
                continue

            rule = policy.accept_rules.first_match(ip)
            if rule is not None:
                log.debug("%s  %s matched accept rule %s", ROUTE_SERVICE_ALLOW, ip, rule)
                return Decision(True, f"accept rule {rule}", raw_ip, path)

            rule = policy.deny_rules.first_match(ip)
            if rule is None:
                continue

            log.debug("%s matched deny rule %s, checking path %r", ip, rule, path)
            if not policy.reject_paths.enabled:
                log.debug("%s  Matched reject IP %s", ROUTE_SERVICE_REJECT, ip)
                return Decision(False, f"deny rule {rule}", raw_ip, path)

            hit = policy.reject_paths.matching(path or "")
            if hit is not None:
                log.debug(
                    "%s  Matched reject IP %s and path %s", ROUTE_SERVICE_REJECT, ip, hit
                )
                return Decision(False, f"deny rule {rule} and path {hit}", raw_ip, path)

            log.debug(
                "%s  Matched reject IP %s but no reject path matched %r",
                ROUTE_SERVICE_ALLOW,
                ip,
                path,
            )
            return Decision(True, f"deny rule {rule} without reject path", raw_ip, path)

        log.debug("%s  No explicit match for %s, passing through", ROUTE_SERVICE_ALLOW, ips)
        return Decision(True, "no match", None, path)
