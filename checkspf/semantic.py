# -*- coding: utf-8 -*-
"""Semantic validation of SPF records, offline and following DNS"""

from __future__ import annotations

import logging
from typing import Optional

from checkspf._constants import MAX_DNS_LOOKUPS
from checkspf.decoder import Decoder
from checkspf.terms import (
    MECHANISMS_INVOLVING_DNS_LOOKUPS,
    MODIFIERS_INVOLVING_DNS_LOOKUPS,
    AllMechanism,
    ExpModifier,
    IncludeMechanism,
    Mechanism,
    PtrMechanism,
    Record,
    RedirectModifier,
    UnknownModifier,
)
from checkspf.utils import SPFError

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


def _too_many_lookups_description(count: int) -> str:
    mechanisms = "', '".join(MECHANISMS_INVOLVING_DNS_LOOKUPS)
    modifiers = "', '".join(MODIFIERS_INVOLVING_DNS_LOOKUPS)
    return (
        f"The total number of the '{mechanisms}' mechanisms and the "
        f"'{modifiers}' modifiers is {count} "
        f"(it should not exceed {MAX_DNS_LOOKUPS})"
    )


class Issue:
    """A problem found in an SPF record"""

    CODE_TOO_MANY_DNS_LOOKUPS = 1
    CODE_ALL_NOT_LAST_MECHANISM = 2
    CODE_ALL_AND_REDIRECT = 3
    CODE_SHOULD_AVOID_PTR = 4
    CODE_MODIFIER_NOT_AFTER_MECHANISMS = 5
    CODE_DUPLICATED_MODIFIER = 6
    CODE_UNKNOWN_MODIFIER = 7

    LEVEL_NOTICE = 1
    LEVEL_WARNING = 2
    LEVEL_FATAL = 3

    LEVEL_DESCRIPTIONS = {
        LEVEL_NOTICE: "notice",
        LEVEL_WARNING: "warning",
        LEVEL_FATAL: "fatal",
    }

    def __init__(
        self, record: Optional[Record], code: int, description: str, level: int
    ):
        self.record = record
        self.code = code
        self.description = description
        self.level = level

    @property
    def level_description(self) -> str:
        return self.LEVEL_DESCRIPTIONS.get(self.level, "")

    def to_dict(self) -> dict:
        return {
            "level": self.level_description,
            "code": self.code,
            "description": self.description,
        }

    def __str__(self):
        if self.level_description == "":
            return self.description
        return f"[{self.level_description}] {self.description}"

    def __repr__(self):
        return f"<{type(self).__name__} {self.code} {self}>"


class SemanticValidator:
    """Finds the issues of a single SPF record, without DNS queries"""

    def validate(self, record: Record, minimum_level: Optional[int] = None) -> list[Issue]:
        """
        Gets the issues of an SPF record

        Args:
            record (checkspf.terms.Record): The record to check
            minimum_level (int): Only return issues of this level or higher
                                 (one of the ``Issue.LEVEL_...`` values)

        Returns:
            list: A list of :class:`Issue`
        """
        issues = (
            self._check_max_dns_lookups(record)
            + self._check_all_is_last_mechanism(record)
            + self._check_all_and_redirect(record)
            + self._check_no_ptr(record)
            + self._check_modifiers_position(record)
            + self._check_modifiers_uniqueness(record)
            + self._check_unknown_modifiers(record)
        )
        return _filter_level(issues, minimum_level)

    @staticmethod
    def _check_max_dns_lookups(record: Record) -> list[Issue]:
        count = len(
            [
                mechanism
                for mechanism in record.mechanisms
                if mechanism.name in MECHANISMS_INVOLVING_DNS_LOOKUPS
            ]
        ) + len(
            [
                modifier
                for modifier in record.modifiers
                if modifier.name in MODIFIERS_INVOLVING_DNS_LOOKUPS
            ]
        )
        if count <= MAX_DNS_LOOKUPS:
            return []
        return [
            Issue(
                record,
                Issue.CODE_TOO_MANY_DNS_LOOKUPS,
                _too_many_lookups_description(count),
                Issue.LEVEL_WARNING,
            )
        ]

    @staticmethod
    def _check_all_is_last_mechanism(record: Record) -> list[Issue]:
        for mechanism in record.mechanisms[:-1]:
            if isinstance(mechanism, AllMechanism):
                return [
                    Issue(
                        record,
                        Issue.CODE_ALL_NOT_LAST_MECHANISM,
                        f"'{AllMechanism.HANDLE}' should be the last mechanism "
                        "(any other mechanism will be ignored)",
                        Issue.LEVEL_WARNING,
                    )
                ]
        return []

    @staticmethod
    def _check_all_and_redirect(record: Record) -> list[Issue]:
        has_all = any(isinstance(m, AllMechanism) for m in record.mechanisms)
        has_redirect = any(isinstance(m, RedirectModifier) for m in record.modifiers)
        if has_all and has_redirect:
            return [
                Issue(
                    record,
                    Issue.CODE_ALL_AND_REDIRECT,
                    f"The '{RedirectModifier.HANDLE}' modifier will be ignored "
                    f"since there's a '{AllMechanism.HANDLE}' mechanism",
                    Issue.LEVEL_WARNING,
                )
            ]
        return []

    @staticmethod
    def _check_no_ptr(record: Record) -> list[Issue]:
        if any(isinstance(m, PtrMechanism) for m in record.mechanisms):
            return [
                Issue(
                    record,
                    Issue.CODE_SHOULD_AVOID_PTR,
                    f"The '{PtrMechanism.HANDLE}' mechanism shouldn't be used "
                    "because it's slow, resource intensive, and not very "
                    "reliable",
                    Issue.LEVEL_NOTICE,
                )
            ]
        return []

    @staticmethod
    def _check_modifiers_position(record: Record) -> list[Issue]:
        mechanism_found = False
        misplaced_modifiers = []
        for term in reversed(record.terms):
            if isinstance(term, Mechanism):
                mechanism_found = True
            elif mechanism_found and isinstance(
                term, (RedirectModifier, ExpModifier)
            ):
                misplaced_modifiers.insert(0, str(term))
        if misplaced_modifiers:
            modifiers = "', '".join(misplaced_modifiers)
            return [
                Issue(
                    record,
                    Issue.CODE_MODIFIER_NOT_AFTER_MECHANISMS,
                    f"The modifiers ('{modifiers}') should be after all the "
                    "mechanisms",
                    Issue.LEVEL_NOTICE,
                )
            ]
        return []

    @staticmethod
    def _check_modifiers_uniqueness(record: Record) -> list[Issue]:
        counters = {RedirectModifier.HANDLE: 0, ExpModifier.HANDLE: 0}
        for modifier in record.modifiers:
            if isinstance(modifier, (RedirectModifier, ExpModifier)):
                counters[modifier.name] += 1
        issues = []
        for name, count in counters.items():
            if count > 1:
                issues.append(
                    Issue(
                        record,
                        Issue.CODE_DUPLICATED_MODIFIER,
                        f"The '{name}' modifier is present more than once "
                        f"({count} times)",
                        Issue.LEVEL_FATAL,
                    )
                )
        return issues

    @staticmethod
    def _check_unknown_modifiers(record: Record) -> list[Issue]:
        return [
            Issue(
                record,
                Issue.CODE_UNKNOWN_MODIFIER,
                f"The '{modifier}' modifier is unknown",
                Issue.LEVEL_NOTICE,
            )
            for modifier in record.modifiers
            if isinstance(modifier, UnknownModifier)
        ]


class OnlineIssue(Issue):
    """An issue found while following the records of a domain"""

    CODE_NODOMAIN_NORECORD_PROVIDED = 101
    CODE_RECORD_PARSE_FAILED = 102
    CODE_RECORD_FETCH_OR_PARSE_FAILED = 103
    CODE_RECORD_NOT_FOUND = 104
    CODE_RECURSIVE_DOMAIN_DETECTED = 105
    CODE_DOMAIN_WITH_PLACEHOLDER = 106
    CODE_TOO_MANY_DNS_LOOKUPS_ONLINE = 107

    def __init__(
        self,
        domain: str,
        txt_record: str,
        record: Optional[Record],
        code: int,
        description: str,
        level: int,
    ):
        Issue.__init__(self, record, code, description, level)
        self.domain = domain
        self.txt_record = txt_record

    @classmethod
    def from_offline_issue(cls, issue: Issue, domain: str) -> OnlineIssue:
        return cls(
            domain,
            "",
            issue.record,
            issue.code,
            issue.description,
            issue.level,
        )

    def to_dict(self) -> dict:
        issue = Issue.to_dict(self)
        issue["domain"] = self.domain
        return issue


class OnlineDnsLookup:
    """A node of the tree of the DNS lookups an SPF record requires"""

    def __init__(self, name: str, record: Optional[str] = None):
        self.name = name
        self.record = record
        self.references: list[OnlineDnsLookup] = []

    def add_reference(self, reference: OnlineDnsLookup) -> OnlineDnsLookup:
        self.references.append(reference)
        return self

    @property
    def lookup_count(self) -> int:
        return 1 + sum(reference.lookup_count for reference in self.references)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "record": self.record,
            "lookup_count": self.lookup_count,
            "references": [reference.to_dict() for reference in self.references],
        }


class OnlineIssueTooManyDNSLookups(OnlineIssue):
    """Reports an include/redirect tree needing too many DNS lookups"""

    def __init__(
        self,
        dns_lookups: list[OnlineDnsLookup],
        domain: str,
        txt_record: str,
        record: Optional[Record],
        code: int,
        description: str,
        level: int,
    ):
        OnlineIssue.__init__(self, domain, txt_record, record, code, description, level)
        self.dns_lookups = dns_lookups

    @property
    def total_lookup_count(self) -> int:
        return sum(dns_lookup.lookup_count for dns_lookup in self.dns_lookups)

    def to_dict(self) -> dict:
        issue = OnlineIssue.to_dict(self)
        issue["dns_lookups"] = [dns_lookup.to_dict() for dns_lookup in self.dns_lookups]
        return issue


def _filter_level(issues: list, minimum_level: Optional[int]) -> list:
    if minimum_level is None:
        return issues
    return [issue for issue in issues if issue.level >= minimum_level]


class OnlineSemanticValidator:
    """
    Validates SPF records following their ``include`` mechanisms and
    ``redirect`` modifiers

    Args:
        decoder (checkspf.decoder.Decoder): Fetches and parses the records
        semantic_validator (SemanticValidator): Validates each record
    """

    def __init__(
        self,
        decoder: Optional[Decoder] = None,
        semantic_validator: Optional[SemanticValidator] = None,
    ):
        self.decoder = decoder if decoder is not None else Decoder()
        self.semantic_validator = semantic_validator or SemanticValidator()

    def validate_domain(
        self, domain: str, minimum_level: Optional[int] = None
    ) -> list[OnlineIssue]:
        """
        Validates the SPF record of a domain and the records it refers to

        Args:
            domain (str): The domain to check
            minimum_level (int): Only return issues of this level or higher

        Returns:
            list: A list of :class:`OnlineIssue`
        """
        return _filter_level(self._validate(domain, None)[0], minimum_level)

    def validate_raw_record(
        self, txt_record: str, domain: str = "", minimum_level: Optional[int] = None
    ) -> list[OnlineIssue]:
        """
        Validates the text of an SPF record and the records it refers to

        Args:
            txt_record (str): The SPF record
            domain (str): The domain publishing the record, if known
            minimum_level (int): Only return issues of this level or higher

        Returns:
            list: A list of :class:`OnlineIssue`
        """
        try:
            record = self.decoder.get_record_from_txt(txt_record)
        except SPFError as e:
            issues = [
                OnlineIssue(
                    domain,
                    txt_record,
                    None,
                    OnlineIssue.CODE_RECORD_PARSE_FAILED,
                    str(e),
                    OnlineIssue.LEVEL_FATAL,
                )
            ]
        else:
            if record is None:
                issues = [
                    OnlineIssue(
                        domain,
                        txt_record,
                        None,
                        OnlineIssue.CODE_RECORD_PARSE_FAILED,
                        f"'{txt_record}' is not a valid SPF record",
                        OnlineIssue.LEVEL_FATAL,
                    )
                ]
            else:
                issues = self._validate(domain, record)[0]

        return _filter_level(issues, minimum_level)

    def validate_record(
        self, record: Record, domain: str = "", minimum_level: Optional[int] = None
    ) -> list[OnlineIssue]:
        """Validates a parsed SPF record and the records it refers to"""
        return _filter_level(self._validate(domain, record)[0], minimum_level)

    def get_lookups_for_domain(self, domain: str) -> list[OnlineDnsLookup]:
        return self.get_lookups_for_record(None, domain)

    def get_lookups_for_raw_record(
        self, txt_record: str, domain: str = ""
    ) -> list[OnlineDnsLookup]:
        try:
            record = self.decoder.get_record_from_txt(txt_record)
        except SPFError as e:
            logging.debug(f"Unable to parse {txt_record!r}: {e}")
            return []
        if record is None:
            return []
        return self.get_lookups_for_record(record, domain)

    def get_lookups_for_record(
        self, record: Optional[Record], domain: str = ""
    ) -> list[OnlineDnsLookup]:
        """
        Builds the tree of the DNS lookups required by a record

        Args:
            record (checkspf.terms.Record): The record (fetched from
                                            ``domain`` if ``None``)
            domain (str): The domain publishing the record

        Returns:
            list: The :class:`OnlineDnsLookup` nodes of the record's terms
        """
        return self._validate(domain, record)[2]

    def _validate(
        self,
        domain: str,
        record: Optional[Record],
        parents: Optional[list[str]] = None,
    ) -> tuple[list[OnlineIssue], Optional[Record], list[OnlineDnsLookup], int]:
        """Returns the issues, the record, its lookup nodes and the total
        number of lookups of its tree"""
        is_top_level = parents is None
        if parents is None:
            parents = []
        if record is None:
            if domain == "":
                return (
                    [
                        OnlineIssue(
                            domain,
                            "",
                            None,
                            OnlineIssue.CODE_NODOMAIN_NORECORD_PROVIDED,
                            "Neither a domain nor an SPF record has been provided.",
                            OnlineIssue.LEVEL_FATAL,
                        )
                    ],
                    None,
                    [],
                    0,
                )
            if domain in parents:
                return (
                    [
                        OnlineIssue(
                            domain,
                            "",
                            None,
                            OnlineIssue.CODE_RECURSIVE_DOMAIN_DETECTED,
                            f"The domain {domain} is included/redirected-to "
                            "recursively",
                            OnlineIssue.LEVEL_FATAL,
                        )
                    ],
                    None,
                    [],
                    0,
                )
            try:
                record = self.decoder.get_record_from_domain(domain)
            except SPFError as e:
                return (
                    [
                        OnlineIssue(
                            domain,
                            "",
                            None,
                            OnlineIssue.CODE_RECORD_FETCH_OR_PARSE_FAILED,
                            str(e),
                            OnlineIssue.LEVEL_FATAL,
                        )
                    ],
                    None,
                    [],
                    0,
                )
            if record is None:
                return (
                    [
                        OnlineIssue(
                            domain,
                            "",
                            None,
                            OnlineIssue.CODE_RECORD_NOT_FOUND,
                            f"No SPF records found for domain {domain}",
                            OnlineIssue.LEVEL_FATAL,
                        )
                    ],
                    None,
                    [],
                    0,
                )
        children_parents = parents + [domain] if domain != "" else parents
        issues = [
            OnlineIssue.from_offline_issue(issue, domain)
            for issue in self.semantic_validator.validate(record)
        ]
        dns_lookups = []
        total_lookup_count = 0
        terms = record.mechanisms + record.modifiers
        for term in terms:
            if term.name not in (
                MECHANISMS_INVOLVING_DNS_LOOKUPS + MODIFIERS_INVOLVING_DNS_LOOKUPS
            ):
                continue
            total_lookup_count += 1
            if not isinstance(term, (IncludeMechanism, RedirectModifier)):
                dns_lookups.append(OnlineDnsLookup(str(term)))
                continue
            if term.domain_spec.contains_placeholders:
                kind = "mechanism" if isinstance(term, Mechanism) else "modifier"
                issues.append(
                    OnlineIssue(
                        domain,
                        "",
                        record,
                        OnlineIssue.CODE_DOMAIN_WITH_PLACEHOLDER,
                        f"The {kind} {term} includes a placeholder: its SPF "
                        "record has not been parsed.",
                        OnlineIssue.LEVEL_NOTICE,
                    )
                )
                continue
            target = str(term.domain_spec)
            logging.debug(f"{domain or 'record'}: following {term}")
            sub_issues, sub_record, sub_lookups, sub_count = self._validate(
                target, None, children_parents
            )
            issues += sub_issues
            total_lookup_count += sub_count
            dns_lookup = OnlineDnsLookup(
                str(term), str(sub_record) if sub_record is not None else None
            )
            for sub_lookup in sub_lookups:
                dns_lookup.add_reference(sub_lookup)
            dns_lookups.append(dns_lookup)

        if is_top_level and total_lookup_count > MAX_DNS_LOOKUPS:
            issues.append(
                OnlineIssueTooManyDNSLookups(
                    dns_lookups,
                    domain,
                    "",
                    record,
                    OnlineIssue.CODE_TOO_MANY_DNS_LOOKUPS_ONLINE,
                    _too_many_lookups_description(total_lookup_count),
                    OnlineIssue.LEVEL_WARNING,
                )
            )

        return issues, record, dns_lookups, total_lookup_count
