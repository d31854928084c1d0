"""Upstream selection by domain name."""

from __future__ import annotations

import abc
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)

UNQUALIFIED_NAMES = "unqualified_names"
"""Reserved name for unqualified names only, i.e. names without dots."""

_MAX_DOMAIN_LEN = 253
_MAX_LABEL_LEN = 63


class Upstream(abc.ABC):
    """A DNS server that queries can be forwarded to."""

    @abc.abstractmethod
    def exchange(self, msg: Any) -> Any:
        """Send ``msg`` and return the reply."""

    @abc.abstractmethod
    def address(self) -> str:
        """Return the address of the server."""


def _validate_label(label: str) -> None:
    if not label:
        raise ValueError("domain name label is empty")
    if len(label) > _MAX_LABEL_LEN:
        raise ValueError(
            f"domain name label {label!r} is too long: {len(label)} > {_MAX_LABEL_LEN}"
        )
    if not label[0].isalnum():
        raise ValueError(f"bad domain name label {label!r}: bad first character")
    if not label[-1].isalnum():
        raise ValueError(f"bad domain name label {label!r}: bad last character")
    for char in label:
        if not (char.isalnum() or char == "-"):
            raise ValueError(f"bad domain name label {label!r}: bad character {char!r}")


def validate_domain_name(name: str) -> None:
    """Raise ValueError if ``name`` is not a valid domain name."""
    if not name:
        raise ValueError("domain name is empty")
    if len(name) > _MAX_DOMAIN_LEN:
        raise ValueError(
            f"domain name {name!r} is too long: {len(name)} > {_MAX_DOMAIN_LEN}"
        )
    for label in name.split("."):
        try:
            _validate_label(label)
        except ValueError as err:
            raise ValueError(f"bad domain name {name!r}: {err}") from None


def parse_upstream_line(line: str) -> tuple[str, list[str]]:
    """Split a config line into the upstream address and its reserved domains.

    The domains are lower-cased and fully qualified; an empty domain stands
    for unqualified names.  Lines without a ``[/.../]`` prefix have no domains.
    """
    if not line.startswith("[/"):
        return line, []

    parts = line[len("[/"):].split("/]")
    if len(parts) != 2:
        raise ValueError(f"wrong upstream specification: {line}")

    domains, address = parts
    hosts: list[str] = []
    for conf_host in domains.split("/"):
        if not conf_host:
            hosts.append(UNQUALIFIED_NAMES)
            continue
        validate_domain_name(conf_host.removeprefix("*."))
        hosts.append((conf_host + ".").lower())

    return address, hosts


@dataclass
class UpstreamConfig:
    """Default upstreams plus upstreams reserved for particular domains."""

    upstreams: list[Upstream] = field(default_factory=list)
    domain_reserved_upstreams: dict[str, list[Upstream]] = field(default_factory=dict)
    specified_domain_upstreams: dict[str, list[Upstream]] = field(default_factory=dict)
    subdomain_exclusions: set[str] = field(default_factory=set)

    def upstreams_for_domain(self, host: str) -> list[Upstream]:
        """Return the upstreams to use for ``host``.

        More specific domains take priority.  A domain reserved with an empty
        list has been excluded and is sent to the default upstreams.
        """
        if not self.domain_reserved_upstreams:
            return self.upstreams

        dots = host.count(".")
        if dots < 2:
            host = UNQUALIFIED_NAMES
        else:
            host = host.lower()
            if host in self.subdomain_exclusions:
                ups = self.specified_domain_upstreams.get(host)
                if ups:
                    return ups
                # Check for a spec of the upper level domain.
                parent = host.split(".", 1)[1]
                ups = self.domain_reserved_upstreams.get(parent)
                if ups:
                    return ups
                return self.upstreams

        for skipped in range(dots):
            name = host.split(".", skipped)[-1]
            ups = self.domain_reserved_upstreams.get(name)
            if ups is None:
                continue
            if not ups:
                return self.upstreams
            return ups

        return self.upstreams


def parse_upstreams_config(
    lines: Iterable[str], factory: Callable[[str], Upstream]
) -> UpstreamConfig:
    """Build an UpstreamConfig from config lines.

    Default upstream syntax is ``<upstream>``; reserved upstreams are written
    ``[/domain1/../domainN/]<upstream>``; ``[/*.domain/]<upstream>`` reserves
    subdomains only; ``[/domain/]#`` excludes a domain from reserved upstreams.
    ``factory`` creates an upstream from its address; each distinct address is
    created once.
    """
    upstreams: list[Upstream] = []
    index: dict[str, Upstream] = {}
    domain_reserved: dict[str, list[Upstream]] = {}
    specified: dict[str, list[Upstream]] = {}
    subdomains_only: dict[str, list[Upstream]] = {}
    exclusions: set[str] = set()

    for number, line in enumerate(lines):
        address, hosts = parse_upstream_line(line)

        if address == "#" and hosts:
            for host in hosts:
                if host.startswith("*."):
                    host = host[len("*."):]
                    exclusions.add(host)
                    subdomains_only[host] = []
                else:
                    domain_reserved[host] = []
                    specified[host] = []
            continue

        dns_upstream = index.get(address)
        if dns_upstream is None:
            try:
                dns_upstream = factory(address)
            except Exception as err:
                raise ValueError(f"cannot prepare the upstream {line}: {err}") from err
            index[address] = dns_upstream

        if not hosts:
            log.debug("Upstream %d: %s", number, dns_upstream.address())
            upstreams.append(dns_upstream)
            continue

        for host in hosts:
            if host.startswith("*."):
                host = host[len("*."):]
                exclusions.add(host)
                log.debug("domain %s is added to exclusions list", host)
                subdomains_only.setdefault(host, []).append(dns_upstream)
            else:
                specified.setdefault(host, []).append(dns_upstream)
            domain_reserved.setdefault(host, []).append(dns_upstream)

        log.debug(
            "Upstream %d: %s is reserved for next domains: %s",
            number,
            dns_upstream.address(),
            ", ".join(hosts),
        )

    # Wildcard subdomain specs replace those of the upper level domains.
    domain_reserved.update(subdomains_only)

    return UpstreamConfig(
        upstreams=upstreams,
        domain_reserved_upstreams=domain_reserved,
        specified_domain_upstreams=specified,
        subdomain_exclusions=exclusions,
    )