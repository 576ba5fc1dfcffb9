# -*- coding: utf-8 -*-
"""DNS utility functions"""

from __future__ import annotations

import ipaddress
import logging
import re
import unicodedata
from typing import Optional, Union
from collections.abc import Sequence

import dns.resolver
import dns.reversename
from dns.nameserver import Nameserver
from expiringdict import ExpiringDict

from checkspf._constants import (
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_DNS_TIMEOUT_RETRIES,
    DNS_CACHE_MAX_AGE_SECONDS,
    DNS_CACHE_MAX_LEN,
)

"""Copyright 2019-2023 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

ZERO_WIDTH_RE = re.compile(r"[\u200B-\u200D\uFEFF]")  # includes ZWSP, ZWNJ, ZWJ, BOM

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class SPFError(Exception):
    """Base class of the errors raised while decoding or checking SPF records"""

    def __init__(self, msg: str, data: Optional[dict] = None):
        """
        Args:
            msg (str): The error message
            data (dict): A dictionary of data to include in the output
        """
        self.data = data
        Exception.__init__(self, msg)


class DNSResolutionException(SPFError):
    """Raised when a DNS query fails for reasons other than a missing name"""

    def __init__(self, domain: str, message: str):
        if domain:
            message = f"{domain}: {message}"
        SPFError.__init__(self, message, data={"domain": domain})
        self.domain = domain


def normalize_domain(domain: str) -> str:
    """
    Normalize an input domain by removing zero-width characters and lowering it

    Args:
        domain (str): A domain or subdomain

    Returns:
        str: A normalized domain
    """
    domain = unicodedata.normalize("NFC", domain)
    domain = ZERO_WIDTH_RE.sub("", domain)
    return domain.lower()


def new_dns_cache() -> ExpiringDict:
    """
    Creates a DNS answer cache sized by ``DNS_CACHE_MAX_LEN`` and
    ``DNS_CACHE_MAX_AGE_SECONDS``

    Returns:
        ExpiringDict: An empty cache for :class:`StandardResolver`
    """
    return ExpiringDict(
        max_len=DNS_CACHE_MAX_LEN, max_age_seconds=DNS_CACHE_MAX_AGE_SECONDS
    )


class Resolver:
    """
    The DNS primitives needed to evaluate SPF records.

    Implementations other than :class:`StandardResolver` (for example an
    in-memory table in tests) must provide all of these methods.
    """

    def get_txt_records(self, domain: str) -> list[str]:
        """
        Returns the TXT records of a domain

        Raises:
            :exc:`checkspf.utils.DNSResolutionException`
        """
        raise NotImplementedError

    def get_ip_addresses_from_domain_name(self, domain: str) -> list[IPAddress]:
        """Returns the IPv4 and IPv6 addresses a domain name resolves to"""
        raise NotImplementedError

    def get_mx_records(self, domain: str) -> list[str]:
        """Returns the mail exchangers of a domain (hostnames or IP literals)"""
        raise NotImplementedError

    def get_ptr_records(self, ip_address: IPAddress) -> list[str]:
        """Returns the PTR hostnames of an IP address"""
        raise NotImplementedError

    def get_domain_name_from_ip_address(self, ip_address: IPAddress) -> str:
        """Returns the domain name of an IP address, or an empty string"""
        raise NotImplementedError


class StandardResolver(Resolver):
    """A :class:`Resolver` that queries DNS with dnspython"""

    def __init__(
        self,
        *,
        nameservers: Optional[Sequence[str | Nameserver]] = None,
        resolver: Optional[dns.resolver.Resolver] = None,
        timeout: float = DEFAULT_DNS_TIMEOUT,
        timeout_retries: int = DEFAULT_DNS_TIMEOUT_RETRIES,
        cache: Optional[ExpiringDict] = None,
    ):
        """
        Args:
            nameservers (list): A list of one or more nameservers to use
            resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                              requests
            timeout (float): Sets the DNS timeout in seconds
            timeout_retries (int): The number of times to reattempt a query
                                   after a timeout
            cache (ExpiringDict): Answer cache shared by the queries of this
                                  resolver (no caching if ``None``)
        """
        self.timeout = float(timeout)
        self.timeout_retries = timeout_retries
        self.cache = cache
        if not resolver:
            resolver = dns.resolver.Resolver()
            if nameservers is not None:
                resolver.nameservers = nameservers
            resolver.timeout = self.timeout
            resolver.lifetime = self.timeout
        self.resolver = resolver

    def query(self, domain: str, record_type: str, _attempt: int = 0) -> list[str]:
        """
        Queries DNS

        Args:
            domain (str): The domain or subdomain to query about
            record_type (str): The record type to query for

        Returns:
            list: A list of answers

        Raises:
            :exc:`dns.exception.DNSException`
        """
        domain = normalize_domain(domain)
        record_type = record_type.upper()
        cache_key = f"{domain}_{record_type}"
        if isinstance(self.cache, ExpiringDict):
            records = self.cache.get(cache_key)
            if isinstance(records, list):
                return records
        logging.debug(f"Getting {record_type} records for {domain}")
        try:
            answers = self.resolver.resolve(
                domain, record_type, lifetime=self.timeout
            )
        except dns.resolver.LifetimeTimeout as e:
            _attempt += 1
            if _attempt > self.timeout_retries:
                raise e
            return self.query(domain, record_type, _attempt=_attempt)
        if record_type == "TXT":
            records = []
            for record in answers:
                try:
                    records.append(b"".join(record.strings).decode())
                except UnicodeDecodeError:
                    records.append("Undecodable characters")
        else:
            records = list(
                map(
                    lambda r: r.to_text().rstrip("."),
                    answers,
                )
            )
        if isinstance(self.cache, ExpiringDict):
            self.cache[cache_key] = records

        return records

    def _query_or_empty(self, domain: str, record_type: str) -> list[str]:
        if domain == "":
            raise DNSResolutionException(domain, "No domain specified")
        try:
            return self.query(domain, record_type)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []
        except Exception as error:
            raise DNSResolutionException(
                domain, f"Failed to get the {record_type} records: {error}"
            )

    def get_txt_records(self, domain: str) -> list[str]:
        return self._query_or_empty(domain, "TXT")

    def get_ip_addresses_from_domain_name(self, domain: str) -> list[IPAddress]:
        addresses = []
        for qt in ["A", "AAAA"]:
            for address in self._query_or_empty(domain, qt):
                addresses.append(ipaddress.ip_address(address))
        return addresses

    def get_mx_records(self, domain: str) -> list[str]:
        answers = self._query_or_empty(domain, "MX")
        if answers == ["0 "]:
            logging.debug('"No Service" MX record found')
            return []
        hosts = []
        for record in answers:
            record = record.split(" ")
            preference = int(record[0])
            hostname = record[1].rstrip(".").strip().lower()
            if hostname == "":
                continue
            hosts.append((preference, hostname))
        hosts = sorted(hosts)
        return [hostname for _, hostname in hosts]

    def get_ptr_records(self, ip_address: IPAddress) -> list[str]:
        name = str(dns.reversename.from_address(str(ip_address)))
        return self._query_or_empty(name, "PTR")

    def get_domain_name_from_ip_address(self, ip_address: IPAddress) -> str:
        try:
            for hostname in self.get_ptr_records(ip_address):
                if ip_address in self.get_ip_addresses_from_domain_name(hostname):
                    return hostname
        except DNSResolutionException as error:
            logging.debug(f"Reverse lookup of {ip_address} failed: {error}")
        return ""
