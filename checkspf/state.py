# -*- coding: utf-8 -*-
"""The envelope being checked and the per-check evaluation state"""

from __future__ import annotations

import ipaddress
import logging
from typing import Optional, Union

from checkspf._constants import MAX_DNS_LOOKUPS
from checkspf.utils import IPAddress, Resolver, SPFError

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

UNKNOWN_CHECKER_DOMAIN = "unknown"


class TooManyDNSLookupsException(SPFError):
    """Raised when a check exceeds the DNS lookup limit"""

    def __init__(self, max_dns_lookups: int = MAX_DNS_LOOKUPS):
        self.max_dns_lookups = max_dns_lookups
        SPFError.__init__(
            self,
            f"Too many DNS lookups (the limit is {max_dns_lookups})",
            data={"max_dns_lookups": max_dns_lookups},
        )


class InvalidIPAddressException(SPFError):
    """Raised when the IP address of the SMTP client is not valid"""

    def __init__(self, address: str):
        self.address = address
        SPFError.__init__(
            self, f"'{address}' is not a valid IP address", data={"address": address}
        )


def _split_address(address: str) -> tuple[str, str]:
    at_position = address.find("@")
    if at_position == -1:
        return "", ""
    return address[:at_position], address[at_position + 1 :]


class Environment:
    """
    The data of the SMTP session being checked

    Args:
        client_ip: The IP address of the SMTP client (``None`` or ``""`` if
                   unknown)
        helo_domain (str): The domain given with ``HELO``/``EHLO`` (derived
                           from ``mail_from`` if ``None``)
        mail_from (str): The ``MAIL FROM`` address
        checker_domain (str): The domain of the host performing the check

    Raises:
        :exc:`checkspf.state.InvalidIPAddressException`
    """

    def __init__(
        self,
        client_ip: Union[str, IPAddress, None],
        helo_domain: Optional[str] = None,
        mail_from: str = "",
        checker_domain: str = UNKNOWN_CHECKER_DOMAIN,
    ):
        if client_ip is None or client_ip == "":
            self.client_ip = None
        elif isinstance(client_ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            self.client_ip = client_ip
        else:
            try:
                self.client_ip = ipaddress.ip_address(client_ip)
            except ValueError:
                raise InvalidIPAddressException(client_ip)
        if helo_domain is None:
            helo_domain = _split_address(mail_from)[1]
        self.helo_domain = helo_domain
        self.mail_from = mail_from
        self.checker_domain = checker_domain

    @property
    def mail_from_domain(self) -> str:
        return _split_address(self.mail_from)[1]

    def __repr__(self):
        return (
            f"Environment({str(self.client_ip) if self.client_ip else None!r}, "
            f"{self.helo_domain!r}, {self.mail_from!r}, {self.checker_domain!r})"
        )


class State:
    """The mutable context of one sender check: the DNS lookup counter and the
    memoised reverse lookups of the client IP address"""

    max_dns_lookups = MAX_DNS_LOOKUPS

    def __init__(self, environment: Environment, resolver: Resolver):
        self.environment = environment
        self.resolver = resolver
        self.dns_lookups_count = 0
        self._reverse_lookups = {}

    @property
    def sender(self) -> str:
        raise NotImplementedError

    @property
    def sender_local_part(self) -> str:
        return _split_address(self.sender)[0]

    @property
    def sender_domain(self) -> str:
        return _split_address(self.sender)[1]

    def get_client_ip_domain(self) -> str:
        """
        Returns the validated domain name of the client IP address, performing
        (and counting) the reverse lookup the first time only

        Raises:
            :exc:`checkspf.state.TooManyDNSLookupsException`
        """
        ip_address = self.environment.client_ip
        if ip_address is None:
            return ""
        key = str(ip_address)
        if key not in self._reverse_lookups:
            self.count_dns_lookup()
            logging.debug(f"Looking up the domain name of {key}")
            self._reverse_lookups[key] = (
                self.resolver.get_domain_name_from_ip_address(ip_address)
            )
        return self._reverse_lookups[key]

    def reset_dns_lookups_count(self) -> State:
        self.dns_lookups_count = 0
        return self

    def count_dns_lookup(self, number: int = 1):
        self.dns_lookups_count += number
        if self.dns_lookups_count > self.max_dns_lookups:
            raise TooManyDNSLookupsException(self.max_dns_lookups)


class HeloDomainState(State):
    """Checks the ``HELO``/``EHLO`` identity (sender ``postmaster@<domain>``)"""

    @property
    def sender(self) -> str:
        helo_domain = self.environment.helo_domain
        if helo_domain == "":
            return ""
        return f"postmaster@{helo_domain}"


class MailFromState(State):
    """Checks the ``MAIL FROM`` identity"""

    @property
    def sender(self) -> str:
        return self.environment.mail_from
