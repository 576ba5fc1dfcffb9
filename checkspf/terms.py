# -*- coding: utf-8 -*-
"""SPF record terms: mechanisms and modifiers (RFC 7208 sections 5 and 6)"""

from __future__ import annotations

import ipaddress
from typing import Optional, Union

from checkspf.macro import MacroString, MacroStringDecoder

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

DomainSpec = Union[str, MacroString]


def _to_macro_string(domain_spec: DomainSpec, allow_empty: bool = False) -> MacroString:
    if isinstance(domain_spec, MacroString):
        return domain_spec
    return MacroStringDecoder().decode(domain_spec, allow_empty=allow_empty)


class Term:
    """Base class of mechanisms and modifiers"""

    HANDLE = ""

    @property
    def name(self) -> str:
        return self.HANDLE

    def __eq__(self, other):
        return type(self) is type(other) and vars(self) == vars(other)

    def __hash__(self):
        return hash(str(self))

    def __repr__(self):
        return f"<{type(self).__name__} {self}>"


class Mechanism(Term):
    QUALIFIER_PASS = "+"
    QUALIFIER_FAIL = "-"
    QUALIFIER_SOFTFAIL = "~"
    QUALIFIER_NEUTRAL = "?"

    def __init__(self, qualifier: str = QUALIFIER_PASS):
        self.qualifier = qualifier

    def get_qualifier(self, omit_default: bool = False) -> str:
        if omit_default and self.qualifier == self.QUALIFIER_PASS:
            return ""
        return self.qualifier

    def __str__(self):
        return self.get_qualifier(True) + self.HANDLE


class Modifier(Term):
    pass


class AllMechanism(Mechanism):
    HANDLE = "all"


class _DomainSpecMechanism(Mechanism):
    """A mechanism with a mandatory ``:domain-spec``"""

    def __init__(self, qualifier: str, domain_spec: DomainSpec):
        Mechanism.__init__(self, qualifier)
        self.domain_spec = _to_macro_string(domain_spec)

    def __str__(self):
        return f"{self.get_qualifier(True)}{self.HANDLE}:{self.domain_spec}"


class IncludeMechanism(_DomainSpecMechanism):
    HANDLE = "include"


class ExistsMechanism(_DomainSpecMechanism):
    HANDLE = "exists"


class _DualCidrMechanism(Mechanism):
    """A mechanism with an optional ``:domain-spec`` and dual CIDR lengths"""

    def __init__(
        self,
        qualifier: str,
        domain_spec: DomainSpec = "",
        ip4_cidr_length: Optional[int] = None,
        ip6_cidr_length: Optional[int] = None,
    ):
        Mechanism.__init__(self, qualifier)
        self.domain_spec = _to_macro_string(domain_spec, allow_empty=True)
        self.ip4_cidr_length = 32 if ip4_cidr_length is None else ip4_cidr_length
        self.ip6_cidr_length = 128 if ip6_cidr_length is None else ip6_cidr_length

    def __str__(self):
        result = self.get_qualifier(True) + self.HANDLE
        if not self.domain_spec.is_empty:
            result += f":{self.domain_spec}"
        if self.ip4_cidr_length != 32:
            result += f"/{self.ip4_cidr_length}"
        if self.ip6_cidr_length != 128:
            result += f"//{self.ip6_cidr_length}"
        return result


class AMechanism(_DualCidrMechanism):
    HANDLE = "a"


class MxMechanism(_DualCidrMechanism):
    HANDLE = "mx"


class PtrMechanism(Mechanism):
    HANDLE = "ptr"

    def __init__(self, qualifier: str, domain_spec: DomainSpec = ""):
        Mechanism.__init__(self, qualifier)
        self.domain_spec = _to_macro_string(domain_spec, allow_empty=True)

    def __str__(self):
        result = self.get_qualifier(True) + self.HANDLE
        if not self.domain_spec.is_empty:
            result += f":{self.domain_spec}"
        return result


class Ip4Mechanism(Mechanism):
    HANDLE = "ip4"

    def __init__(
        self,
        qualifier: str,
        ip: Union[str, ipaddress.IPv4Address],
        cidr_length: Optional[int] = None,
    ):
        Mechanism.__init__(self, qualifier)
        self.ip = ipaddress.IPv4Address(ip)
        self.cidr_length = 32 if cidr_length is None else cidr_length

    def __str__(self):
        result = f"{self.get_qualifier(True)}{self.HANDLE}:{self.ip}"
        if self.cidr_length != 32:
            result += f"/{self.cidr_length}"
        return result


class Ip6Mechanism(Mechanism):
    HANDLE = "ip6"

    def __init__(
        self,
        qualifier: str,
        ip: Union[str, ipaddress.IPv6Address],
        cidr_length: Optional[int] = None,
    ):
        Mechanism.__init__(self, qualifier)
        self.ip = ipaddress.IPv6Address(ip)
        self.cidr_length = 128 if cidr_length is None else cidr_length

    def __str__(self):
        result = f"{self.get_qualifier(True)}{self.HANDLE}:{self.ip}"
        if self.cidr_length != 128:
            result += f"/{self.cidr_length}"
        return result


class _DomainSpecModifier(Modifier):
    def __init__(self, domain_spec: DomainSpec):
        self.domain_spec = _to_macro_string(domain_spec)

    def __str__(self):
        return f"{self.HANDLE}={self.domain_spec}"


class RedirectModifier(_DomainSpecModifier):
    HANDLE = "redirect"


class ExpModifier(_DomainSpecModifier):
    HANDLE = "exp"


class UnknownModifier(Modifier):
    """A modifier this library doesn't know, kept so the record round-trips"""

    def __init__(self, name: str, value: str):
        self._name = name
        self.value = value

    @property
    def name(self) -> str:
        return self._name

    def __str__(self):
        return f"{self._name}={self.value}"


MECHANISMS_INVOLVING_DNS_LOOKUPS = [
    IncludeMechanism.HANDLE,
    AMechanism.HANDLE,
    MxMechanism.HANDLE,
    PtrMechanism.HANDLE,
    ExistsMechanism.HANDLE,
]
MODIFIERS_INVOLVING_DNS_LOOKUPS = [RedirectModifier.HANDLE]


class Record:
    """An SPF record: the terms following ``v=spf1``, in order"""

    PREFIX = "v=spf1"

    def __init__(self, terms: Optional[list[Term]] = None):
        self.terms: list[Term] = list(terms) if terms else []

    def add_term(self, term: Term) -> Record:
        self.terms.append(term)
        return self

    @property
    def mechanisms(self) -> list[Mechanism]:
        return [term for term in self.terms if isinstance(term, Mechanism)]

    @property
    def modifiers(self) -> list[Modifier]:
        return [term for term in self.terms if isinstance(term, Modifier)]

    def __str__(self):
        return " ".join([self.PREFIX] + list(map(str, self.terms)))

    def __repr__(self):
        return f"<Record {self}>"

    def __eq__(self, other):
        return isinstance(other, Record) and self.terms == other.terms

    def __hash__(self):
        return hash(str(self))
