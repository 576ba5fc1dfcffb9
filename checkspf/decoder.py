# -*- coding: utf-8 -*-
"""Decodes SPF TXT records into :class:`checkspf.terms.Record` objects"""

from __future__ import annotations

import ipaddress
import logging
import re
from typing import Optional

from checkspf.macro import MacroStringDecoder
from checkspf.terms import (
    AllMechanism,
    AMechanism,
    ExistsMechanism,
    ExpModifier,
    IncludeMechanism,
    Ip4Mechanism,
    Ip6Mechanism,
    Mechanism,
    Modifier,
    MxMechanism,
    PtrMechanism,
    Record,
    RedirectModifier,
    Term,
    UnknownModifier,
)
from checkspf.utils import Resolver, SPFError, StandardResolver

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

MECHANISM_REGEX_STRING = (
    r"^(?P<qualifier>[+\-~?])?"
    r"(?P<handle>all|include|a|mx|ptr|ip4|ip6|exists)"
    r"(?P<data>[:/].*)?$"
)
MODIFIER_REGEX_STRING = r"^(?P<handle>[A-Za-z][\w\-.]*)=(?P<data>.*)$"
DUAL_CIDR_REGEX_STRING = r"^/(/)?(0|[1-9]\d{0,2})"
IP4_CIDR_REGEX_STRING = r"^(.+)/(0|[1-9]\d?)$"
IP6_CIDR_REGEX_STRING = r"^(.+)/(0|[1-9]\d{0,2})$"

MECHANISM_REGEX = re.compile(MECHANISM_REGEX_STRING, re.DOTALL)
MODIFIER_REGEX = re.compile(MODIFIER_REGEX_STRING, re.DOTALL)
DUAL_CIDR_REGEX = re.compile(DUAL_CIDR_REGEX_STRING)
IP4_CIDR_REGEX = re.compile(IP4_CIDR_REGEX_STRING, re.DOTALL)
IP6_CIDR_REGEX = re.compile(IP6_CIDR_REGEX_STRING, re.DOTALL)


class InvalidTermException(SPFError):
    """Raised when an SPF record contains a term that can't be parsed"""

    def __init__(self, term: str):
        self.term = term
        SPFError.__init__(self, f"Invalid SPF term: '{term}'", data={"term": term})


class MultipleSPFRecordsException(SPFError):
    """Raised when a domain publishes more than one SPF record"""

    def __init__(self, domain: str, records: list[str]):
        self.domain = domain
        self.records = records
        SPFError.__init__(
            self,
            f"{domain}: multiple SPF records found ({len(records)})",
            data={"domain": domain, "records": records},
        )


class Decoder:
    """
    Fetches and parses SPF records

    Args:
        resolver (checkspf.utils.Resolver): The DNS resolver to use (a
                                            :class:`StandardResolver` if
                                            ``None``)
    """

    def __init__(self, resolver: Optional[Resolver] = None):
        self.resolver = resolver if resolver is not None else StandardResolver()
        self.macro_string_decoder = MacroStringDecoder()

    def get_record_from_domain(self, domain: str) -> Optional[Record]:
        """
        Fetches and parses the SPF record of a domain

        Args:
            domain (str): The domain to query

        Returns:
            Record: The parsed record, or ``None`` if the domain has no SPF
            record

        Raises:
            :exc:`checkspf.utils.DNSResolutionException`
            :exc:`checkspf.decoder.MultipleSPFRecordsException`
            :exc:`checkspf.decoder.InvalidTermException`
            :exc:`checkspf.macro.InvalidMacroStringException`
        """
        logging.debug(f"Getting the SPF record of {domain}")
        spf_records = []
        for txt_record in self.resolver.get_txt_records(domain):
            if txt_record == Record.PREFIX or txt_record.startswith(
                f"{Record.PREFIX} "
            ):
                spf_records.append(txt_record)
        if len(spf_records) == 0:
            return None
        if len(spf_records) > 1:
            raise MultipleSPFRecordsException(domain, spf_records)

        return self.get_record_from_txt(spf_records[0])

    def get_record_from_txt(self, txt_record: str) -> Optional[Record]:
        """
        Parses the text of an SPF record

        Args:
            txt_record (str): The TXT record

        Returns:
            Record: The parsed record, or ``None`` if the text is not an SPF
            record

        Raises:
            :exc:`checkspf.decoder.InvalidTermException`
            :exc:`checkspf.macro.InvalidMacroStringException`
        """
        raw_terms = txt_record.rstrip(" ").split(" ")
        if raw_terms[0] != Record.PREFIX:
            return None
        record = Record()
        for raw_term in raw_terms[1:]:
            if raw_term == "":
                continue
            record.add_term(self.parse_term(raw_term))

        return record

    def parse_term(self, raw_term: str) -> Term:
        match = MECHANISM_REGEX.match(raw_term)
        if match:
            term = self.parse_mechanism(
                match.group("handle"),
                match.group("qualifier") or Mechanism.QUALIFIER_PASS,
                match.group("data") or "",
            )
        else:
            term = None
            match = MODIFIER_REGEX.match(raw_term)
            if match:
                term = self.parse_modifier(match.group("handle"), match.group("data"))
        if term is None:
            raise InvalidTermException(raw_term)

        return term

    def parse_mechanism(
        self, handle: str, qualifier: str, data: str
    ) -> Optional[Mechanism]:
        parsers = {
            AllMechanism.HANDLE: self._parse_all,
            IncludeMechanism.HANDLE: self._parse_include,
            AMechanism.HANDLE: self._parse_a,
            MxMechanism.HANDLE: self._parse_mx,
            PtrMechanism.HANDLE: self._parse_ptr,
            Ip4Mechanism.HANDLE: self._parse_ip4,
            Ip6Mechanism.HANDLE: self._parse_ip6,
            ExistsMechanism.HANDLE: self._parse_exists,
        }
        return parsers[handle](qualifier, data)

    @staticmethod
    def _parse_all(qualifier: str, data: str) -> Optional[AllMechanism]:
        if data != "":
            return None
        return AllMechanism(qualifier)

    def _parse_include(self, qualifier: str, data: str) -> Optional[IncludeMechanism]:
        if not data.startswith(":") or data == ":":
            return None
        return IncludeMechanism(qualifier, self.macro_string_decoder.decode(data[1:]))

    def _parse_exists(self, qualifier: str, data: str) -> Optional[ExistsMechanism]:
        if not data.startswith(":") or data == ":":
            return None
        return ExistsMechanism(qualifier, self.macro_string_decoder.decode(data[1:]))

    def _parse_a(self, qualifier: str, data: str) -> Optional[AMechanism]:
        parsed = self._extract_domain_spec_dual_cidr(data)
        if parsed is None:
            return None
        return AMechanism(qualifier, *parsed)

    def _parse_mx(self, qualifier: str, data: str) -> Optional[MxMechanism]:
        parsed = self._extract_domain_spec_dual_cidr(data)
        if parsed is None:
            return None
        return MxMechanism(qualifier, *parsed)

    def _parse_ptr(self, qualifier: str, data: str) -> Optional[PtrMechanism]:
        domain_spec = ""
        if data != "":
            if not data.startswith(":") or data == ":":
                return None
            domain_spec = data[1:]
        return PtrMechanism(
            qualifier,
            self.macro_string_decoder.decode(domain_spec, allow_empty=True),
        )

    @staticmethod
    def _parse_ip4(qualifier: str, data: str) -> Optional[Ip4Mechanism]:
        if not data.startswith(":"):
            return None
        data = data[1:]
        cidr_length = None
        match = IP4_CIDR_REGEX.match(data)
        if match:
            cidr_length = int(match.group(2))
            if cidr_length > 32:
                return None
            data = match.group(1)
        try:
            ip = ipaddress.IPv4Address(data)
        except ValueError:
            return None
        return Ip4Mechanism(qualifier, ip, cidr_length)

    @staticmethod
    def _parse_ip6(qualifier: str, data: str) -> Optional[Ip6Mechanism]:
        if not data.startswith(":"):
            return None
        data = data[1:]
        cidr_length = None
        match = IP6_CIDR_REGEX.match(data)
        if match:
            cidr_length = int(match.group(2))
            if cidr_length > 128:
                return None
            data = match.group(1)
        # Scope IDs are not part of an ip6-network
        if "%" in data:
            return None
        try:
            ip = ipaddress.IPv6Address(data)
        except ValueError:
            return None
        return Ip6Mechanism(qualifier, ip, cidr_length)

    def _extract_domain_spec_dual_cidr(self, data: str) -> Optional[tuple]:
        domain_spec = ""
        ip4_cidr_length = None
        ip6_cidr_length = None
        if data != "":
            slash_position = data.find("/")
            if data.startswith(":"):
                if slash_position == -1:
                    domain_spec = data[1:]
                else:
                    domain_spec = data[1:slash_position]
                if domain_spec == "":
                    return None
            elif slash_position != 0:
                return None
            if slash_position != -1:
                data = data[slash_position:]
                while data != "":
                    match = DUAL_CIDR_REGEX.match(data)
                    if not match:
                        return None
                    number = int(match.group(2))
                    if match.group(1) == "/":
                        if number > 128 or ip6_cidr_length is not None:
                            return None
                        ip6_cidr_length = number
                    else:
                        if number > 32 or ip4_cidr_length is not None:
                            return None
                        ip4_cidr_length = number
                    data = data[match.end() :]

        return (
            self.macro_string_decoder.decode(domain_spec, allow_empty=True),
            ip4_cidr_length,
            ip6_cidr_length,
        )

    def parse_modifier(self, handle: str, data: str) -> Optional[Modifier]:
        if handle in [RedirectModifier.HANDLE, ExpModifier.HANDLE]:
            if data == "":
                return None
            domain_spec = self.macro_string_decoder.decode(data)
            if handle == RedirectModifier.HANDLE:
                return RedirectModifier(domain_spec)
            return ExpModifier(domain_spec)

        return UnknownModifier(handle, data)
