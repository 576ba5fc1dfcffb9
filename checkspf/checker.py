# -*- coding: utf-8 -*-
"""Evaluates SPF policies (RFC 7208 sections 4 and 5)"""

from __future__ import annotations

import ipaddress
import logging
import re
from typing import Optional

from checkspf._constants import MAX_MX_RECORDS, MAX_PTR_RECORDS
from checkspf.decoder import Decoder
from checkspf.macro import Expander, MacroStringDecoder
from checkspf.semantic import Issue, SemanticValidator
from checkspf.state import (
    Environment,
    HeloDomainState,
    MailFromState,
    State,
    TooManyDNSLookupsException,
)
from checkspf.terms import (
    AllMechanism,
    AMechanism,
    ExistsMechanism,
    ExpModifier,
    IncludeMechanism,
    Ip4Mechanism,
    Ip6Mechanism,
    Mechanism,
    MxMechanism,
    PtrMechanism,
    Record,
    RedirectModifier,
)
from checkspf.utils import (
    DNSResolutionException,
    IPAddress,
    Resolver,
    SPFError,
    StandardResolver,
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

US_ASCII_REGEX = re.compile(r"^[\x01-\x7f]*$")

FAIL_EXPLANATION_ERROR = "Failed to build the fail explanation string"


class Result:
    """The outcome of an SPF check"""

    CODE_NONE = "none"
    CODE_NEUTRAL = "neutral"
    CODE_PASS = "pass"
    CODE_FAIL = "fail"
    CODE_SOFTFAIL = "softfail"
    # Never produced: DNS errors are reported as "none"
    CODE_ERROR_TEMP = "temperror"
    CODE_ERROR_PERMANENT = "permerror"

    def __init__(self, code: str, matched_mechanism: Optional[Mechanism] = None):
        self.code = code
        self.matched_mechanism = matched_mechanism
        self.messages: list[str] = []
        self.fail_explanation: Optional[str] = None

    def add_message(self, message: str) -> Result:
        self.messages.append(message)
        return self

    def to_dict(self) -> dict:
        matched_mechanism = None
        if self.matched_mechanism is not None:
            matched_mechanism = str(self.matched_mechanism)
        return {
            "result": self.code,
            "matched_mechanism": matched_mechanism,
            "fail_explanation": self.fail_explanation,
            "messages": list(self.messages),
        }

    def __repr__(self):
        return f"<Result {self.code} {self.matched_mechanism!r}>"


class Checker:
    """
    Checks whether an SMTP client is authorized to send mail for a domain

    Args:
        resolver (checkspf.utils.Resolver): The DNS resolver
        decoder (checkspf.decoder.Decoder): The SPF record decoder
        semantic_validator (checkspf.semantic.SemanticValidator): Rejects
            records with fatal issues
        macro_string_expander (checkspf.macro.Expander): Expands domain-specs
    """

    FLAG_CHECK_HELODOMAIN = 0b0001
    FLAG_CHECK_MAILFROMADDRESS = 0b0010

    def __init__(
        self,
        resolver: Optional[Resolver] = None,
        decoder: Optional[Decoder] = None,
        semantic_validator: Optional[SemanticValidator] = None,
        macro_string_expander: Optional[Expander] = None,
    ):
        self.resolver = resolver if resolver is not None else StandardResolver()
        self.decoder = decoder if decoder is not None else Decoder(self.resolver)
        self.semantic_validator = semantic_validator or SemanticValidator()
        self.macro_string_expander = macro_string_expander or Expander()
        self._mechanism_matchers = {
            AllMechanism.HANDLE: self._match_all,
            IncludeMechanism.HANDLE: self._match_include,
            AMechanism.HANDLE: self._match_a,
            MxMechanism.HANDLE: self._match_mx,
            PtrMechanism.HANDLE: self._match_ptr,
            Ip4Mechanism.HANDLE: self._match_ip4,
            Ip6Mechanism.HANDLE: self._match_ip6,
            ExistsMechanism.HANDLE: self._match_exists,
        }

    def check(
        self,
        environment: Environment,
        flags: int = FLAG_CHECK_HELODOMAIN | FLAG_CHECK_MAILFROMADDRESS,
    ) -> Result:
        """
        Checks an SMTP envelope

        Args:
            environment (checkspf.state.Environment): The envelope to check
            flags (int): A combination of ``FLAG_CHECK_HELODOMAIN`` and
                         ``FLAG_CHECK_MAILFROMADDRESS``

        Returns:
            Result: The result of the check
        """
        if environment.client_ip is None:
            return Result(Result.CODE_NONE).add_message(
                "The IP address of the sender SMTP client is not specified"
            )
        result = None
        if flags & self.FLAG_CHECK_HELODOMAIN:
            result = self._check_sender(
                HeloDomainState(environment, self.resolver),
                'The "HELO"/"EHLO" domain is not valid',
            )
        if flags & self.FLAG_CHECK_MAILFROMADDRESS:
            if result is None:
                result = self._check_sender(
                    MailFromState(environment, self.resolver),
                    'The "MAIL FROM" email address is not valid',
                )
            elif result.code not in [Result.CODE_PASS, Result.CODE_FAIL]:
                mail_from_domain = environment.mail_from_domain
                if (
                    mail_from_domain != ""
                    and mail_from_domain.lower() != environment.helo_domain.lower()
                ):
                    result = self._check_sender(
                        MailFromState(environment, self.resolver),
                        'The "MAIL FROM" email address is not valid',
                    )
        if result is None:
            return Result(Result.CODE_NONE).add_message(
                "No check has been performed (as requested)"
            )

        return result

    def _check_sender(self, state: State, invalid_domain_message: str) -> Result:
        domain = state.sender_domain
        if domain == "":
            return Result(Result.CODE_NONE).add_message(invalid_domain_message)
        logging.debug(f"Checking {state.environment.client_ip} against {domain}")
        try:
            return self.validate(state, domain)
        except TooManyDNSLookupsException as e:
            return Result(Result.CODE_ERROR_PERMANENT).add_message(str(e))
        except DNSResolutionException as e:
            return Result(Result.CODE_NONE).add_message(str(e))
        except SPFError as e:
            return Result(Result.CODE_ERROR_PERMANENT).add_message(str(e))

    def validate(self, state: State, domain: str) -> Result:
        """
        Evaluates the SPF record of a domain

        Args:
            state (checkspf.state.State): The state of the running check
            domain (str): The domain whose record is evaluated

        Returns:
            Result: The result for this domain

        Raises:
            :exc:`checkspf.state.TooManyDNSLookupsException`
            :exc:`checkspf.utils.DNSResolutionException`
            :exc:`checkspf.macro.MissingEnvironmentValueException`
        """
        if domain == "":
            return Result(Result.CODE_NONE).add_message(
                "The sender domain is not valid"
            )
        if "." not in domain.strip("."):
            return Result(Result.CODE_NONE).add_message(
                "The sender domain is not multi-label"
            )
        try:
            record = self.decoder.get_record_from_domain(domain)
        except DNSResolutionException as e:
            return Result(Result.CODE_NONE).add_message(str(e))
        except SPFError as e:
            return Result(Result.CODE_ERROR_PERMANENT).add_message(str(e))
        if record is None:
            return Result(Result.CODE_NONE).add_message(
                f"No SPF DNS record found for domain '{domain}'"
            )
        issues = self.semantic_validator.validate(record, Issue.LEVEL_FATAL)
        if len(issues) > 0:
            result = Result(Result.CODE_ERROR_PERMANENT)
            for issue in issues:
                result.add_message(issue.description)
            return result

        for mechanism in record.mechanisms:
            if not self._mechanism_matchers[mechanism.HANDLE](state, domain, mechanism):
                continue
            logging.debug(f"{domain}: matched {mechanism}")
            if mechanism.qualifier == Mechanism.QUALIFIER_PASS:
                return Result(Result.CODE_PASS, mechanism)
            if mechanism.qualifier == Mechanism.QUALIFIER_FAIL:
                return self._build_fail_result(
                    state, domain, record, mechanism, Result.CODE_FAIL
                )
            if mechanism.qualifier == Mechanism.QUALIFIER_SOFTFAIL:
                return self._build_fail_result(
                    state, domain, record, mechanism, Result.CODE_SOFTFAIL
                )
            return Result(Result.CODE_NEUTRAL, mechanism)

        for modifier in record.modifiers:
            if isinstance(modifier, RedirectModifier):
                state.count_dns_lookup()
                target_domain = self.macro_string_expander.expand(
                    modifier.domain_spec, domain, state
                )
                logging.debug(f"{domain}: following redirect to {target_domain}")
                result = self.validate(state, target_domain)
                if result.code == Result.CODE_NONE:
                    result = Result(Result.CODE_ERROR_PERMANENT).add_message(
                        "The redirect SPF record didn't return a response code"
                    )
                return result

        return Result(Result.CODE_NEUTRAL).add_message(
            "No mechanism matched and no redirect modifier found."
        )

    def _get_target_domain(self, state: State, domain: str, mechanism) -> str:
        if mechanism.domain_spec.is_empty:
            return domain
        return self.macro_string_expander.expand(mechanism.domain_spec, domain, state)

    @staticmethod
    def _match_all(state: State, domain: str, mechanism: AllMechanism) -> bool:
        return True

    def _match_include(
        self, state: State, domain: str, mechanism: IncludeMechanism
    ) -> bool:
        state.count_dns_lookup()
        target_domain = self.macro_string_expander.expand(
            mechanism.domain_spec, domain, state
        )
        logging.debug(f"{domain}: following include of {target_domain}")
        return self.validate(state, target_domain).code == Result.CODE_PASS

    def _match_a(self, state: State, domain: str, mechanism: AMechanism) -> bool:
        state.count_dns_lookup()
        target_domain = self._get_target_domain(state, domain, mechanism)
        return self._match_domain_ips(
            state.environment.client_ip,
            target_domain,
            mechanism.ip4_cidr_length,
            mechanism.ip6_cidr_length,
        )

    def _match_mx(self, state: State, domain: str, mechanism: MxMechanism) -> bool:
        state.count_dns_lookup()
        target_domain = self._get_target_domain(state, domain, mechanism)
        client_ip = state.environment.client_ip
        for mx_record in self.resolver.get_mx_records(target_domain)[:MAX_MX_RECORDS]:
            try:
                mx_ip = ipaddress.ip_address(mx_record)
            except ValueError:
                mx_ip = None
            if mx_ip is not None:
                if self._match_ip(
                    client_ip,
                    mx_ip,
                    mechanism.ip4_cidr_length,
                    mechanism.ip6_cidr_length,
                ):
                    return True
            elif self._match_domain_ips(
                client_ip,
                mx_record,
                mechanism.ip4_cidr_length,
                mechanism.ip6_cidr_length,
            ):
                return True

        return False

    def _match_ptr(self, state: State, domain: str, mechanism: PtrMechanism) -> bool:
        state.count_dns_lookup()
        target_domain = self._get_target_domain(state, domain, mechanism)
        search = "." + target_domain.strip(".").lower()
        client_ip = state.environment.client_ip
        pointers = self.resolver.get_ptr_records(client_ip)[:MAX_PTR_RECORDS]
        for pointer in pointers:
            for pointer_ip in self.resolver.get_ip_addresses_from_domain_name(pointer):
                if not self._match_ip(client_ip, pointer_ip, 32, 128):
                    continue
                if ("." + pointer.strip(".").lower()).endswith(search):
                    return True

        return False

    def _match_ip4(self, state: State, domain: str, mechanism: Ip4Mechanism) -> bool:
        return self._match_ip(
            state.environment.client_ip, mechanism.ip, mechanism.cidr_length, None
        )

    def _match_ip6(self, state: State, domain: str, mechanism: Ip6Mechanism) -> bool:
        return self._match_ip(
            state.environment.client_ip, mechanism.ip, None, mechanism.cidr_length
        )

    def _match_exists(
        self, state: State, domain: str, mechanism: ExistsMechanism
    ) -> bool:
        state.count_dns_lookup()
        target_domain = self.macro_string_expander.expand(
            mechanism.domain_spec, domain, state
        )
        return len(self.resolver.get_ip_addresses_from_domain_name(target_domain)) > 0

    def _match_domain_ips(
        self,
        client_ip: IPAddress,
        domain: str,
        ip4_cidr_length: Optional[int],
        ip6_cidr_length: Optional[int],
    ) -> bool:
        for target_ip in self.resolver.get_ip_addresses_from_domain_name(domain):
            if self._match_ip(client_ip, target_ip, ip4_cidr_length, ip6_cidr_length):
                return True
        return False

    @staticmethod
    def _match_ip(
        client_ip: IPAddress,
        check_ip: IPAddress,
        ip4_cidr_length: Optional[int],
        ip6_cidr_length: Optional[int],
    ) -> bool:
        client_ipv4 = _to_ipv4(client_ip)
        check_ipv4 = _to_ipv4(check_ip)
        if (
            ip4_cidr_length is not None
            and client_ipv4 is not None
            and check_ipv4 is not None
        ):
            network = ipaddress.ip_network(
                f"{check_ipv4}/{ip4_cidr_length}", strict=False
            )
            if client_ipv4 in network:
                return True
        # IPv4 addresses are also compared as IPv4-mapped IPv6 addresses
        if ip6_cidr_length is not None:
            network = ipaddress.ip_network(
                f"{_to_ipv6(check_ip)}/{ip6_cidr_length}", strict=False
            )
            if _to_ipv6(client_ip) in network:
                return True

        return False

    def _build_fail_result(
        self,
        state: State,
        domain: str,
        record: Record,
        matched_mechanism: Mechanism,
        code: str,
    ) -> Result:
        result = Result(code, matched_mechanism)
        for modifier in record.modifiers:
            if not isinstance(modifier, ExpModifier):
                break
            try:
                target_domain = self.macro_string_expander.expand(
                    modifier.domain_spec, domain, state
                )
                txt_records = self.resolver.get_txt_records(target_domain)
                if len(txt_records) == 0:
                    result.add_message(
                        f"{FAIL_EXPLANATION_ERROR}: no TXT records for "
                        f"'{target_domain}'"
                    )
                elif len(txt_records) > 1:
                    result.add_message(
                        f"{FAIL_EXPLANATION_ERROR}: more than one TXT record "
                        f"(exactly {len(txt_records)}) for '{target_domain}'"
                    )
                else:
                    macro_string = MacroStringDecoder().decode(
                        txt_records[0], exp=True
                    )
                    explanation = self.macro_string_expander.expand(
                        macro_string, target_domain, state
                    )
                    if US_ASCII_REGEX.match(explanation):
                        result.fail_explanation = explanation
                    else:
                        result.add_message(
                            f"{FAIL_EXPLANATION_ERROR}: non US-ASCII characters "
                            f"found in '{explanation}'"
                        )
            except SPFError as e:
                result.add_message(f"{FAIL_EXPLANATION_ERROR}: {e}.")
            break

        return result


def _to_ipv4(ip_address: IPAddress) -> Optional[ipaddress.IPv4Address]:
    if isinstance(ip_address, ipaddress.IPv4Address):
        return ip_address
    return ip_address.ipv4_mapped


def _to_ipv6(ip_address: IPAddress) -> ipaddress.IPv6Address:
    if isinstance(ip_address, ipaddress.IPv6Address):
        return ip_address
    return ipaddress.IPv6Address(f"::ffff:{ip_address}")
