"""
Credential resolution and token probing.

``CredentialResolver`` answers "which bearer token, if any, goes with
this URL?" from a fixed rule table and an explicit environment
snapshot.  It does no I/O, so the same URL and environment always give
the same answer.

``has_valid_token`` is the one network-touching piece: a single GET to
a well-known endpoint, classified only by HTTP status.  It decides
between the licensed and the fallback download set and never raises.
"""

from __future__ import annotations

import logging
import os
import urllib.error
import urllib.request
from collections.abc import Iterable, Mapping

from aiprovision.core.models.config import TokenProbeSpec
from aiprovision.core.models.download import CredentialRule

logger = logging.getLogger(__name__)

USER_AGENT = "aiprovision/1.0"

# Values that mean "not configured" when copied around in .env files
_UNSET_VALUES = ("", "None", "null")


def read_secret(environ: Mapping[str, str], name: str) -> str | None:
    """Read a token variable, treating empty placeholders as unset."""
    value = environ.get(name)
    if value is None:
        return None
    value = value.strip()
    return None if value in _UNSET_VALUES else value


class CredentialResolver:
    """First-match lookup of a URL's host in the credential rule table.

    Rule order is part of the contract: rules are not required to be
    disjoint, and the first matching rule decides.  A matching rule
    whose variable is unset counts as no match — the request goes out
    unauthenticated.
    """

    def __init__(
        self,
        rules: Iterable[CredentialRule],
        environ: Mapping[str, str] | None = None,
    ):
        self._rules = tuple(rules)
        self._environ = dict(os.environ if environ is None else environ)

    @property
    def rules(self) -> tuple[CredentialRule, ...]:
        return self._rules

    def rule_for(self, url: str) -> CredentialRule | None:
        for rule in self._rules:
            if rule.matches(url):
                return rule
        return None

    def resolve(self, url: str) -> str | None:
        """Bearer token for ``url``, or None."""
        rule = self.rule_for(url)
        if rule is None:
            return None
        return read_secret(self._environ, rule.secret_env_var)

    def secret(self, name: str) -> str | None:
        """Read any token variable from the resolver's environment."""
        return read_secret(self._environ, name)


def has_valid_token(secret: str | None, url: str, timeout: float = 10.0) -> bool:
    """Probe ``url`` with ``secret`` as a bearer token.

    Returns True only for HTTP 200.  Any other status, a network
    failure, or an empty secret gives False.
    """
    if not secret:
        return False

    req = urllib.request.Request(
        url,
        method="GET",
        headers={
            "Authorization": f"Bearer {secret}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        },
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            status = resp.getcode()
    except urllib.error.HTTPError as e:
        logger.debug("Token probe %s → HTTP %s", url, e.code)
        return False
    except Exception as e:
        logger.debug("Token probe %s failed: %s", url, e)
        return False

    logger.debug("Token probe %s → HTTP %s", url, status)
    return status == 200


class TokenProber:
    """Runs named token probes at most once per run."""

    def __init__(
        self,
        probes: Mapping[str, TokenProbeSpec],
        resolver: CredentialResolver,
    ):
        self._probes = dict(probes)
        self._resolver = resolver
        self._cache: dict[str, bool] = {}

    def is_valid(self, name: str) -> bool:
        """Whether the token behind probe ``name`` is valid.

        Raises:
            KeyError: If no probe of that name is configured.
        """
        if name in self._cache:
            return self._cache[name]

        spec = self._probes[name]
        secret = self._resolver.secret(spec.secret_env_var)
        if secret is None:
            logger.info("%s not set — using fallback downloads for '%s'", spec.secret_env_var, name)
            valid = False
        else:
            valid = has_valid_token(secret, spec.url, timeout=spec.timeout)
            if valid:
                logger.info("Token for '%s' is valid", name)
            else:
                logger.warning("Token for '%s' was rejected — using fallback downloads", name)

        self._cache[name] = valid
        return valid
