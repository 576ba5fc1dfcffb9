# -*- coding: utf-8 -*-

"""Evaluates and validates Sender Policy Framework (SPF) records"""

from __future__ import annotations

import json
from csv import DictWriter
from io import StringIO
from typing import Optional, Union
from collections.abc import Sequence

import dns.resolver
from dns.nameserver import Nameserver
from expiringdict import ExpiringDict

import checkspf._constants
from checkspf._constants import DEFAULT_DNS_TIMEOUT, DEFAULT_DNS_TIMEOUT_RETRIES
from checkspf.checker import Checker, Result
from checkspf.decoder import Decoder
from checkspf.semantic import Issue, OnlineSemanticValidator
from checkspf.state import UNKNOWN_CHECKER_DOMAIN, Environment
from checkspf.utils import StandardResolver, new_dns_cache, normalize_domain

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


__version__ = checkspf._constants.__version__

CHECK_CSV_FIELDS = [
    "client_ip",
    "helo_domain",
    "mail_from",
    "result",
    "matched_mechanism",
    "fail_explanation",
    "messages",
]

LINT_CSV_FIELDS = [
    "domain",
    "valid",
    "dns_lookup_count",
    "fatal",
    "warnings",
    "notices",
]


def check_spf(
    client_ip: str,
    mail_from: str,
    helo_domain: Optional[str] = None,
    *,
    checker_domain: str = UNKNOWN_CHECKER_DOMAIN,
    check_helo: bool = True,
    check_mail_from: bool = True,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = DEFAULT_DNS_TIMEOUT_RETRIES,
    cache: Optional[ExpiringDict] = None,
) -> dict:
    """
    Checks whether an SMTP client may send mail for the given envelope

    Args:
        client_ip (str): The IP address of the SMTP client
        mail_from (str): The ``MAIL FROM`` address
        helo_domain (str): The ``HELO``/``EHLO`` domain (taken from
                           ``mail_from`` if ``None``)
        checker_domain (str): The domain of the host performing the check
        check_helo (bool): Check the ``HELO``/``EHLO`` identity
        check_mail_from (bool): Check the ``MAIL FROM`` identity
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        cache (ExpiringDict): An optional DNS answer cache

    Returns:
        dict: A ``dict`` with the following keys:

        - ``client_ip`` - The checked IP address
        - ``helo_domain`` - The ``HELO``/``EHLO`` domain
        - ``mail_from`` - The ``MAIL FROM`` address
        - ``result`` - ``none``, ``neutral``, ``pass``, ``fail``,
          ``softfail`` or ``permerror``
        - ``matched_mechanism`` - The mechanism that matched, if any
        - ``fail_explanation`` - The explanation published by the domain
        - ``messages`` - A ``list`` of diagnostic messages

    Raises:
        :exc:`checkspf.state.InvalidIPAddressException`
    """
    environment = Environment(
        client_ip,
        helo_domain,
        mail_from,
        checker_domain,
    )
    dns_resolver = StandardResolver(
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
        cache=cache,
    )
    flags = 0
    if check_helo:
        flags |= Checker.FLAG_CHECK_HELODOMAIN
    if check_mail_from:
        flags |= Checker.FLAG_CHECK_MAILFROMADDRESS
    result = Checker(dns_resolver).check(environment, flags)

    results = {
        "client_ip": str(environment.client_ip) if environment.client_ip else None,
        "helo_domain": environment.helo_domain,
        "mail_from": environment.mail_from,
    }
    results.update(result.to_dict())

    return results


def validate_spf(
    domain: str,
    *,
    minimum_level: Optional[int] = None,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = DEFAULT_DNS_TIMEOUT_RETRIES,
    cache: Optional[ExpiringDict] = None,
) -> dict:
    """
    Validates the SPF record of a domain, following its includes and
    redirects

    Args:
        domain (str): The domain to validate
        minimum_level (int): Only report issues of this level or higher
                             (one of the ``Issue.LEVEL_...`` values)
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        cache (ExpiringDict): A DNS answer cache (a new one is used for this
                              call if ``None``)

    Returns:
        dict: A ``dict`` with the following keys:

        - ``domain`` - The normalized domain
        - ``valid`` - ``False`` if any fatal issue has been found
        - ``issues`` - A ``list`` of issue ``dict`` objects
        - ``dns_lookups`` - The tree of the DNS lookups of the record
        - ``dns_lookup_count`` - The total number of DNS lookups
    """
    domain = normalize_domain(domain.rstrip("."))
    if cache is None:
        cache = new_dns_cache()
    dns_resolver = StandardResolver(
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
        cache=cache,
    )
    validator = OnlineSemanticValidator(Decoder(dns_resolver))
    issues = validator.validate_domain(domain)
    dns_lookups = validator.get_lookups_for_domain(domain)

    return {
        "domain": domain,
        "valid": not any(issue.level == Issue.LEVEL_FATAL for issue in issues),
        "issues": [
            issue.to_dict()
            for issue in issues
            if minimum_level is None or issue.level >= minimum_level
        ],
        "dns_lookups": [dns_lookup.to_dict() for dns_lookup in dns_lookups],
        "dns_lookup_count": sum(dns_lookup.lookup_count for dns_lookup in dns_lookups),
    }


def results_to_json(
    results: Union[dict[str, object], list[dict[str, object]]],
) -> str:
    """
    Converts a dictionary of results or list of results to a JSON string

    Args:
        results (dict): A dictionary of results

    Returns:
        str: Results in JSON format
    """
    return json.dumps(results, ensure_ascii=False, indent=2)


def results_to_csv_rows(
    results: Union[dict, list[dict]],
) -> list[dict]:
    """
    Converts a results dictionary or list of dictionaries and returns a
    list of CSV row dictionaries

    Args:
        results (dict): A dictionary of results from :func:`check_spf` or
                        :func:`validate_spf`

    Returns:
        list: A list of CSV row dictionaries
    """
    rows = []

    if type(results) is dict:
        results = [results]

    for result in results:
        row = {}
        if "issues" in result:
            row["domain"] = result["domain"]
            row["valid"] = result["valid"]
            row["dns_lookup_count"] = result["dns_lookup_count"]
            for level, column in [
                ("fatal", "fatal"),
                ("warning", "warnings"),
                ("notice", "notices"),
            ]:
                row[column] = "|".join(
                    issue["description"]
                    for issue in result["issues"]
                    if issue["level"] == level
                )
        else:
            for field in CHECK_CSV_FIELDS:
                row[field] = result.get(field)
            row["messages"] = "|".join(result["messages"])
        rows.append(row)

    return rows


def results_to_csv(results: Union[dict, list[dict]]) -> str:
    """
    Converts a dictionary of results to CSV

    Args:
        results (dict): A dictionary of results

    Returns:
        str: A CSV of results
    """
    rows = results_to_csv_rows(results)
    fields = CHECK_CSV_FIELDS
    if len(rows) > 0 and "valid" in rows[0]:
        fields = LINT_CSV_FIELDS
    output = StringIO(newline="\n")
    writer = DictWriter(output, fieldnames=fields)
    writer.writeheader()
    writer.writerows(rows)
    output.flush()

    return output.getvalue()


def output_to_file(path: str, content: str):
    """
    Write given content to the given path

    Args:
        path (str): A file path
        content (str): JSON or CSV text
    """
    with open(
        path, "w", newline="\n", encoding="utf-8", errors="ignore"
    ) as output_file:
        output_file.write(content)


__all__ = [
    "__version__",
    "Checker",
    "Decoder",
    "Environment",
    "Issue",
    "OnlineSemanticValidator",
    "Result",
    "StandardResolver",
    "check_spf",
    "validate_spf",
    "results_to_json",
    "results_to_csv_rows",
    "results_to_csv",
    "output_to_file",
]
