#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Automated tests"""

import ipaddress
import re
import time
import unittest
from types import SimpleNamespace
from unittest import mock

import dns.resolver

import checkspf
import checkspf.utils
from checkspf.checker import Checker, Result
from checkspf.decoder import (
    Decoder,
    InvalidTermException,
    MultipleSPFRecordsException,
)
from checkspf.macro import (
    Expander,
    InvalidMacroStringException,
    LiteralString,
    MacroString,
    MacroStringDecoder,
    MissingEnvironmentValueException,
    Placeholder,
)
from checkspf.semantic import (
    Issue,
    OnlineIssue,
    OnlineSemanticValidator,
    SemanticValidator,
)
from checkspf.state import (
    UNKNOWN_CHECKER_DOMAIN,
    Environment,
    HeloDomainState,
    InvalidIPAddressException,
    MailFromState,
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
    UnknownModifier,
)
from checkspf.utils import DNSResolutionException, Resolver, StandardResolver


class FakeResolver(Resolver):
    """Answers DNS queries from in-memory tables"""

    def __init__(
        self, txt=None, forward=None, mx=None, ptr=None, reverse=None
    ):
        self.txt = txt or {}
        self.forward = forward or {}
        self.mx = mx or {}
        self.ptr = ptr or {}
        self.reverse = reverse or {}

    def get_txt_records(self, domain):
        return list(self.txt.get(domain, []))

    def get_ip_addresses_from_domain_name(self, domain):
        return [ipaddress.ip_address(ip) for ip in self.forward.get(domain, [])]

    def get_mx_records(self, domain):
        return list(self.mx.get(domain, []))

    def get_ptr_records(self, ip_address):
        return list(self.ptr.get(str(ip_address), []))

    def get_domain_name_from_ip_address(self, ip_address):
        return self.reverse.get(str(ip_address), "")


CHECKER_RESOLVER = FakeResolver(
    txt={
        "mail1.from.com": [
            "v=spf1 ip4:10.20.30.40 ~ip6:0:0::3 -all exp=_exp.%{d}"
        ],
        "mail2.from.com": ["v=spf1 -all exp=_exp.%{d}"],
        "_exp.mail1.from.com": ["%{l}%_access%_denied%_at%_%{o}%_via%_%{dr}"],
        "recursive1.recdomain.com": ["v=spf1 include:recursive2.recdomain.%{d1}"],
        "recursive2.recdomain.com": ["v=spf1 redirect=recursive1.%{d2}"],
        "invalid.spf.com": ["v=spf1 redirect=domain1 redirect=domain2"],
        "neutral.spf.com": ["v=spf1 ?all"],
        "redirect.to.notexisting": ["v=spf1 redirect=not.existing.domain"],
        "empty.spf.com": ["v=spf1"],
        "a.default.spf.com": ["v=spf1 a"],
        "a.cidr.spf.com": ["v=spf1 a/24//64"],
    },
    forward={
        "a.default.spf.com": ["a:b::c:d"],
        "a.cidr.spf.com": ["a:b::c:d"],
    },
)

BOTH_IDENTITIES = Checker.FLAG_CHECK_HELODOMAIN | Checker.FLAG_CHECK_MAILFROMADDRESS
EXPLANATION_1 = "john-doe.jr access denied at mail1.from.com via com.from.mail1._exp"

# client ip, helo domain, mail from, flags, resolver, expected result code,
# expected matched mechanism class, expected fail explanation, messages regex
CHECKER_CASES = [
    (
        "10.20.30.40",
        "helo.ehlo.domain",
        "john-doe.jr@mail.from.com",
        0,
        FakeResolver(),
        Result.CODE_NONE,
        None,
        None,
        r"\bNo check",
    ),
    (
        "",
        "helo.ehlo.domain",
        "john-doe.jr@mail.from.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        FakeResolver(),
        Result.CODE_NONE,
        None,
        None,
        r"IP address.+not specified",
    ),
    (
        "10.20.30.40",
        "helo.ehlo.domain",
        "",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        FakeResolver(),
        Result.CODE_NONE,
        None,
        None,
        r"MAIL FROM.+not valid",
    ),
    (
        "10.20.30.40",
        "",
        "john-doe.jr@mail.from.com",
        Checker.FLAG_CHECK_HELODOMAIN,
        FakeResolver(),
        Result.CODE_NONE,
        None,
        None,
        r"HELO.+EHLO.+not valid",
    ),
    (
        "10.20.30.40",
        "helo.ehlo.domain",
        "john-doe.jr@mail.from.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        FakeResolver(),
        Result.CODE_NONE,
        None,
        None,
        r"(?i)\bno spf\b.*\brecord.? found",
    ),
    (
        "10.20.30.40",
        "helo.ehlo.domain",
        "john-doe.jr@mail1.from.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        CHECKER_RESOLVER,
        Result.CODE_PASS,
        Ip4Mechanism,
        None,
        r"^$",
    ),
    (
        "127.0.0.1",
        "helo.ehlo.domain",
        "john-doe.jr@mail1.from.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        CHECKER_RESOLVER,
        Result.CODE_FAIL,
        AllMechanism,
        EXPLANATION_1,
        r"^$",
    ),
    (
        "::3",
        "helo.ehlo.domain",
        "john-doe.jr@mail1.from.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        CHECKER_RESOLVER,
        Result.CODE_SOFTFAIL,
        Ip6Mechanism,
        EXPLANATION_1,
        r"^$",
    ),
    (
        "10.20.30.40",
        "helo.ehlo.domain",
        "john-doe.jr@recursive1.recdomain.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        CHECKER_RESOLVER,
        Result.CODE_ERROR_PERMANENT,
        None,
        None,
        r"(?i)Too many DNS lookups",
    ),
    (
        "::a",
        "mail1.from.com",
        "john-doe.jr@mail1.from.com",
        BOTH_IDENTITIES,
        CHECKER_RESOLVER,
        Result.CODE_FAIL,
        AllMechanism,
        "postmaster access denied at mail1.from.com via com.from.mail1._exp",
        r"^$",
    ),
    (
        "::a",
        "mail2.from.com",
        "john-doe.jr@mail1.from.com",
        BOTH_IDENTITIES,
        CHECKER_RESOLVER,
        Result.CODE_FAIL,
        AllMechanism,
        None,
        r"(?i)no TXT records for '_exp.mail2.from.com",
    ),
    (
        "10.20.30.40",
        "mail1.from.com",
        "john-doe.jr@mail2.from.com",
        BOTH_IDENTITIES,
        CHECKER_RESOLVER,
        Result.CODE_PASS,
        Ip4Mechanism,
        None,
        r"^$",
    ),
    (
        "10.20.30.40",
        "helo.ehlo.domain",
        "john-doe.jr@invalid.spf.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        CHECKER_RESOLVER,
        Result.CODE_ERROR_PERMANENT,
        None,
        None,
        r"(?i)'redirect' modifier.+more than once",
    ),
    (
        "10.20.30.40",
        "helo.ehlo.domain",
        "john-doe.jr@neutral.spf.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        CHECKER_RESOLVER,
        Result.CODE_NEUTRAL,
        AllMechanism,
        None,
        r"^$",
    ),
    (
        "10.20.30.40",
        "helo.ehlo.domain",
        "john-doe.jr@redirect.to.notexisting",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        CHECKER_RESOLVER,
        Result.CODE_ERROR_PERMANENT,
        None,
        None,
        r"(?i)redirect\b.+\b(didn't|did not) return a response code",
    ),
    (
        "10.20.30.40",
        "helo.ehlo.domain",
        "john-doe.jr@empty.spf.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        CHECKER_RESOLVER,
        Result.CODE_NEUTRAL,
        None,
        None,
        r"(?i)\bNo mechanism.*\b(matched|found).*\bno\b.*\bredirect",
    ),
    (
        "10.20.30.40",
        "recursive2.recdomain.com",
        "john-doe.jr@recursive1.recdomain.com",
        Checker.FLAG_CHECK_HELODOMAIN,
        CHECKER_RESOLVER,
        Result.CODE_ERROR_PERMANENT,
        None,
        None,
        r"(?i)Too many DNS lookups",
    ),
    (
        "10.20.30.40",
        "helo.ehlo.domain",
        "john-doe.jr@a.default.spf.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        CHECKER_RESOLVER,
        Result.CODE_NEUTRAL,
        None,
        None,
        r"(?i)\bNo mechanism.*\b(matched|found).*\bno\b.*\bredirect",
    ),
    (
        "a:b::c:d",
        "helo.ehlo.domain",
        "john-doe.jr@a.default.spf.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        CHECKER_RESOLVER,
        Result.CODE_PASS,
        AMechanism,
        None,
        r"^$",
    ),
    (
        "a:b::c:1",
        "helo.ehlo.domain",
        "john-doe.jr@a.default.spf.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        CHECKER_RESOLVER,
        Result.CODE_NEUTRAL,
        None,
        None,
        r"(?i)\bNo mechanism.*\b(matched|found).*\bno\b.*\bredirect",
    ),
    (
        "a:b::c:1",
        "helo.ehlo.domain",
        "john-doe.jr@a.cidr.spf.com",
        Checker.FLAG_CHECK_MAILFROMADDRESS,
        CHECKER_RESOLVER,
        Result.CODE_PASS,
        AMechanism,
        None,
        r"^$",
    ),
]

P = Mechanism.QUALIFIER_PASS

# raw term, expected term, expected string representation (raw term if None)
VALID_TERMS = [
    ("all", AllMechanism(P), None),
    ("+all", AllMechanism(P), "all"),
    ("-all", AllMechanism(Mechanism.QUALIFIER_FAIL), None),
    ("~all", AllMechanism(Mechanism.QUALIFIER_SOFTFAIL), None),
    ("?all", AllMechanism(Mechanism.QUALIFIER_NEUTRAL), None),
    ("include:foo.bar", IncludeMechanism(P, "foo.bar"), None),
    ("a", AMechanism(P), None),
    ("a:foo.bar", AMechanism(P, "foo.bar"), None),
    ("a:foo.bar/4", AMechanism(P, "foo.bar", 4), None),
    ("a:foo.bar//8", AMechanism(P, "foo.bar", None, 8), None),
    ("a:foo.bar/4//8", AMechanism(P, "foo.bar", 4, 8), None),
    ("a/4", AMechanism(P, "", 4), None),
    ("a/0", AMechanism(P, "", 0), None),
    ("a//0", AMechanism(P, "", None, 0), None),
    ("a//0/0", AMechanism(P, "", 0, 0), "a/0//0"),
    ("a//8", AMechanism(P, "", None, 8), None),
    ("a/4//8", AMechanism(P, "", 4, 8), None),
    ("a/32", AMechanism(P), "a"),
    ("a//128", AMechanism(P), "a"),
    ("a/32//64", AMechanism(P, "", None, 64), "a//64"),
    ("a//64/32", AMechanism(P, "", None, 64), "a//64"),
    ("a/4//128", AMechanism(P, "", 4), "a/4"),
    ("mx", MxMechanism(P), None),
    ("mx:foo.bar", MxMechanism(P, "foo.bar"), None),
    ("mx:foo.bar/4", MxMechanism(P, "foo.bar", 4), None),
    ("mx:foo.bar//8", MxMechanism(P, "foo.bar", None, 8), None),
    ("mx:foo.bar/4//8", MxMechanism(P, "foo.bar", 4, 8), None),
    ("mx/4", MxMechanism(P, "", 4), None),
    ("mx//8", MxMechanism(P, "", None, 8), None),
    ("mx/4//8", MxMechanism(P, "", 4, 8), None),
    ("mx/32", MxMechanism(P), "mx"),
    ("mx//128", MxMechanism(P), "mx"),
    ("mx/32//64", MxMechanism(P, "", None, 64), "mx//64"),
    ("mx/4//128", MxMechanism(P, "", 4), "mx/4"),
    ("ptr", PtrMechanism(P), None),
    ("ptr:foo.bar", PtrMechanism(P, "foo.bar"), None),
    ("-ip4:1.2.3.4", Ip4Mechanism(Mechanism.QUALIFIER_FAIL, "1.2.3.4"), None),
    (
        "?ip4:1.2.3.4/5",
        Ip4Mechanism(Mechanism.QUALIFIER_NEUTRAL, "1.2.3.4", 5),
        None,
    ),
    ("ip4:1.2.3.4/0", Ip4Mechanism(P, "1.2.3.4", 0), None),
    ("+ip4:1.2.3.4/32", Ip4Mechanism(P, "1.2.3.4"), "ip4:1.2.3.4"),
    ("-ip6:::1", Ip6Mechanism(Mechanism.QUALIFIER_FAIL, "::1"), None),
    (
        "?ip6:1::0000:2/5",
        Ip6Mechanism(Mechanism.QUALIFIER_NEUTRAL, "1::2", 5),
        "?ip6:1::2/5",
    ),
    ("ip6:1::2/0", Ip6Mechanism(P, "1::2", 0), None),
    ("+ip6:1::2/128", Ip6Mechanism(P, "1::2"), "ip6:1::2"),
    ("exists:foo.bar", ExistsMechanism(P, "foo.bar"), None),
    ("redirect=foo.bar", RedirectModifier("foo.bar"), None),
    ("exp=foo.bar", ExpModifier("foo.bar"), None),
    ("unknown=modifier", UnknownModifier("unknown", "modifier"), None),
]

INVALID_TERMS = [
    "All",
    "all:",
    "?all:foo",
    "include",
    "include:",
    "include/foo.bar",
    "A",
    "a:",
    "a:/1",
    "a/33",
    "a/00",
    "a//00",
    "a/08",
    "a//010",
    "a/1/2",
    "a//129",
    "a//1//2",
    "a/1:foo.bar",
    "Mx",
    "mx/33",
    "mx/1/2",
    "mx//129",
    "mx//1//2",
    "mx/1:foo.bar",
    "ptr:",
    "ip4",
    "ip4:",
    "ip4:a",
    "ip4:0:1::2",
    "ip4:1.2.3.4/01",
    "ip4:1.2.3.4/33",
    "ip6",
    "ip6:",
    "ip6:a",
    "ip6:127.0.0.1",
    "ip6:::1/01",
    "ip6:::1/129",
    "ip6:fe80::1%eth0",
    "exists",
    "exists:",
    "exists/foo.bar",
    "redirect",
    "redirect=",
    "redirect:foo.bar",
    "exp",
    "exp=",
    "exp:foo.bar",
]


def _placeholder_states():
    environment = Environment(
        "10.20.30.40",
        "helo.sender.example.com",
        "john-doe@sender.email.address.com",
        "name.domain.mta",
    )
    state = MailFromState(
        environment,
        FakeResolver(
            reverse={"10.20.30.40": "resolved.sender.email.address.com"},
        ),
    )
    state_ipv6 = MailFromState(
        Environment(
            "1234:abcd::ab12",
            environment.helo_domain,
            environment.mail_from,
            environment.checker_domain,
        ),
        FakeResolver(),
    )
    return state, state_ipv6


class CheckerTest(unittest.TestCase):
    def testCheckerCases(self):
        """Envelopes are checked against the records of their domains"""
        for index, (
            client_ip,
            helo_domain,
            mail_from,
            flags,
            resolver,
            code,
            mechanism_class,
            fail_explanation,
            messages_regex,
        ) in enumerate(CHECKER_CASES):
            with self.subTest(index=index):
                environment = Environment(client_ip, helo_domain, mail_from)
                result = Checker(resolver).check(environment, flags)
                self.assertEqual(result.code, code)
                self.assertEqual(result.fail_explanation, fail_explanation)
                if mechanism_class is None:
                    self.assertIsNone(result.matched_mechanism)
                else:
                    self.assertIsInstance(result.matched_mechanism, mechanism_class)
                self.assertRegex("\n".join(result.messages), messages_regex)

    def _check(self, resolver, client_ip, domain="example.com"):
        environment = Environment(client_ip, domain, f"user@{domain}")
        return Checker(resolver).check(
            environment, Checker.FLAG_CHECK_MAILFROMADDRESS
        )

    def testMxMechanism(self):
        """The mx mechanism matches the addresses of the mail exchangers"""
        resolver = FakeResolver(
            txt={"example.com": ["v=spf1 mx -all"]},
            mx={"example.com": ["mx1.example.com", "192.0.2.99"]},
            forward={"mx1.example.com": ["192.0.2.7"]},
        )
        self.assertEqual(self._check(resolver, "192.0.2.7").code, Result.CODE_PASS)
        self.assertEqual(self._check(resolver, "192.0.2.99").code, Result.CODE_PASS)
        self.assertEqual(self._check(resolver, "192.0.2.8").code, Result.CODE_FAIL)

    def testMxMechanismTooManyMailExchangers(self):
        """Only the first 10 mail exchangers are considered"""
        hosts = [f"mx{i}.example.com" for i in range(11)]
        resolver = FakeResolver(
            txt={"example.com": ["v=spf1 mx -all"]},
            mx={"example.com": hosts},
            forward={"mx10.example.com": ["192.0.2.10"]},
        )
        result = self._check(resolver, "192.0.2.10")
        self.assertEqual(result.code, Result.CODE_FAIL)

    def testPtrMechanism(self):
        """The ptr mechanism matches validated names under the target domain"""
        resolver = FakeResolver(
            txt={
                "example.com": ["v=spf1 ptr -all"],
                "example.net": ["v=spf1 ptr:example.org -all"],
            },
            ptr={"192.0.2.5": ["Mail.Example.com"]},
            forward={"Mail.Example.com": ["192.0.2.5"]},
        )
        result = self._check(resolver, "192.0.2.5")
        self.assertEqual(result.code, Result.CODE_PASS)
        self.assertIsInstance(result.matched_mechanism, PtrMechanism)
        result = self._check(resolver, "192.0.2.5", "example.net")
        self.assertEqual(result.code, Result.CODE_FAIL)

    def testExistsMechanism(self):
        """The exists mechanism matches when its expanded target resolves"""
        resolver = FakeResolver(
            txt={"example.com": ["v=spf1 exists:%{i}._spf.%{d} -all"]},
            forward={"192.0.2.5._spf.example.com": ["127.0.0.2"]},
        )
        self.assertEqual(self._check(resolver, "192.0.2.5").code, Result.CODE_PASS)
        self.assertEqual(self._check(resolver, "192.0.2.6").code, Result.CODE_FAIL)

    def testDualCIDRTestsBothProjections(self):
        """IPv4 addresses are matched with both the IPv4 and the IPv6 prefix"""
        resolver = FakeResolver(
            txt={"example.com": ["v=spf1 a/24//64 -all"]},
            forward={"example.com": ["192.0.2.1"]},
        )
        result = self._check(resolver, "198.51.100.1")
        self.assertEqual(result.code, Result.CODE_PASS)
        self.assertEqual(str(result.matched_mechanism), "a/24//64")
        self.assertEqual(self._check(resolver, "192.0.2.200").code, Result.CODE_PASS)
        self.assertEqual(self._check(resolver, "2001:db8::1").code, Result.CODE_FAIL)

        resolver.txt["example.com"] = ["v=spf1 a/24 -all"]
        self.assertEqual(self._check(resolver, "198.51.100.1").code, Result.CODE_FAIL)
        self.assertEqual(self._check(resolver, "192.0.2.200").code, Result.CODE_PASS)

    def testIncludeMatchesOnlyOnPass(self):
        """An include matches only when the included record passes"""
        resolver = FakeResolver(
            txt={
                "example.com": [
                    "v=spf1 include:_spf.example.net ip4:192.0.2.5 -all"
                ],
                "_spf.example.net": ["v=spf1 ip4:198.51.100.0/24 -all"],
                "example.org": ["v=spf1 include:neutral.example.net -all"],
                "neutral.example.net": ["v=spf1 ?all"],
            },
        )
        result = self._check(resolver, "198.51.100.7")
        self.assertEqual(result.code, Result.CODE_PASS)
        self.assertIsInstance(result.matched_mechanism, IncludeMechanism)

        # A failing include moves on to the next mechanism
        result = self._check(resolver, "192.0.2.5")
        self.assertEqual(result.code, Result.CODE_PASS)
        self.assertIsInstance(result.matched_mechanism, Ip4Mechanism)

        result = self._check(resolver, "203.0.113.1")
        self.assertEqual(result.code, Result.CODE_FAIL)
        self.assertIsInstance(result.matched_mechanism, AllMechanism)

        result = self._check(resolver, "192.0.2.5", "example.org")
        self.assertEqual(result.code, Result.CODE_FAIL)
        self.assertEqual(str(result.matched_mechanism), "-all")

    def testRedirect(self):
        """The redirected record's result is returned as is"""
        resolver = FakeResolver(
            txt={
                "example.com": ["v=spf1 ip4:192.0.2.1 redirect=_spf.example.net"],
                "_spf.example.net": ["v=spf1 ip4:198.51.100.0/24 ~all"],
            },
        )
        result = self._check(resolver, "198.51.100.9")
        self.assertEqual(result.code, Result.CODE_PASS)
        self.assertEqual(str(result.matched_mechanism), "ip4:198.51.100.0/24")
        self.assertEqual(result.messages, [])

        result = self._check(resolver, "192.0.2.1")
        self.assertEqual(result.code, Result.CODE_PASS)
        self.assertEqual(str(result.matched_mechanism), "ip4:192.0.2.1")

        result = self._check(resolver, "203.0.113.1")
        self.assertEqual(result.code, Result.CODE_SOFTFAIL)
        self.assertEqual(str(result.matched_mechanism), "~all")

    def testExplanationOnlyFromFirstModifier(self):
        """exp is ignored unless it is the first modifier of the record"""
        resolver = FakeResolver(
            txt={
                "example.com": ["v=spf1 -all foo=bar exp=explain.example.com"],
                "example.net": ["v=spf1 -all exp=explain.example.com foo=bar"],
                "explain.example.com": ["Not allowed"],
            },
        )
        result = self._check(resolver, "192.0.2.1")
        self.assertEqual(result.code, Result.CODE_FAIL)
        self.assertIsNone(result.fail_explanation)
        self.assertEqual(result.messages, [])

        result = self._check(resolver, "192.0.2.1", "example.net")
        self.assertEqual(result.code, Result.CODE_FAIL)
        self.assertEqual(result.fail_explanation, "Not allowed")

    def testExplanationErrors(self):
        """Unusable explanation records give a message and no explanation"""
        resolver = FakeResolver(
            txt={
                "example.com": ["v=spf1 -all exp=explain.example.com"],
                "explain.example.com": ["Not allowed", "Go away"],
                "example.net": ["v=spf1 -all exp=explain.example.net"],
                "explain.example.net": ["%{l} is not allowed"],
                "example.org": ["v=spf1 -all exp=explain.example.org"],
            },
        )
        result = self._check(resolver, "192.0.2.1")
        self.assertEqual(result.code, Result.CODE_FAIL)
        self.assertIsNone(result.fail_explanation)
        self.assertEqual(len(result.messages), 1)
        self.assertRegex(
            result.messages[0],
            r"more than one TXT record \(exactly 2\) for 'explain\.example\.com'",
        )

        environment = Environment("192.0.2.1", "example.net", "jöhn@example.net")
        result = Checker(resolver).check(
            environment, Checker.FLAG_CHECK_MAILFROMADDRESS
        )
        self.assertEqual(result.code, Result.CODE_FAIL)
        self.assertIsNone(result.fail_explanation)
        self.assertEqual(len(result.messages), 1)
        self.assertIn("non US-ASCII characters", result.messages[0])

        result = self._check(resolver, "192.0.2.1", "example.org")
        self.assertEqual(result.code, Result.CODE_FAIL)
        self.assertIsNone(result.fail_explanation)
        self.assertRegex(result.messages[0], r"no TXT records for")

    def testIPv4MappedClient(self):
        """IPv4-mapped IPv6 clients match ip4 mechanisms"""
        resolver = FakeResolver(
            txt={"example.com": ["v=spf1 ip4:192.0.2.0/24 -all"]},
        )
        result = self._check(resolver, "::ffff:192.0.2.10")
        self.assertEqual(result.code, Result.CODE_PASS)

    def testTooManyDNSLookups(self):
        """More than 10 DNS-querying terms produce a permanent error"""
        terms = " ".join(f"a:h{i}.example.com" for i in range(11))
        resolver = FakeResolver(txt={"example.com": [f"v=spf1 {terms} -all"]})
        result = self._check(resolver, "192.0.2.1")
        self.assertEqual(result.code, Result.CODE_ERROR_PERMANENT)
        self.assertRegex(result.messages[0], r"Too many DNS lookups")

    def testMultipleRecords(self):
        """A domain publishing two SPF records produces a permanent error"""
        resolver = FakeResolver(txt={"example.com": ["v=spf1 -all", "v=spf1 mx"]})
        result = self._check(resolver, "192.0.2.1")
        self.assertEqual(result.code, Result.CODE_ERROR_PERMANENT)

    def testDNSErrorIsNone(self):
        """DNS failures produce a "none" result"""

        class FailingResolver(FakeResolver):
            def get_txt_records(self, domain):
                raise DNSResolutionException(domain, "SERVFAIL")

        result = self._check(FailingResolver(), "192.0.2.1")
        self.assertEqual(result.code, Result.CODE_NONE)
        self.assertEqual(result.messages, ["example.com: SERVFAIL"])

    def testResultToDict(self):
        result = self._check(
            FakeResolver(txt={"example.com": ["v=spf1 -ip4:192.0.2.1 ?all"]}),
            "192.0.2.1",
        )
        self.assertEqual(
            result.to_dict(),
            {
                "result": "fail",
                "matched_mechanism": "-ip4:192.0.2.1",
                "fail_explanation": None,
                "messages": [],
            },
        )


class DecoderTest(unittest.TestCase):
    def testNoRecords(self):
        """TXT records not starting with exactly v=spf1 are ignored"""
        for txt_records in [
            [],
            ["foo", "bar"],
            ["v=spf2"],
            [" v=spf1"],
            ["v =spf1"],
            ["v = spf1"],
            ["v=spf 1"],
            ["V=spf1"],
            ["v=SPF1"],
            ["V=SPF1"],
        ]:
            decoder = Decoder(FakeResolver(txt={"example.org": txt_records}))
            self.assertIsNone(decoder.get_record_from_domain("example.org"))

    def testMultipleRecords(self):
        records = ["v=spf1", "v=spf1 mx"]
        decoder = Decoder(FakeResolver(txt={"example.org": ["foo"] + records}))
        with self.assertRaises(MultipleSPFRecordsException) as context:
            decoder.get_record_from_domain("example.org")
        self.assertEqual(context.exception.domain, "example.org")
        self.assertEqual(context.exception.records, records)

    def testValidTerms(self):
        for raw_term, expected_term, expected_string in VALID_TERMS:
            with self.subTest(term=raw_term):
                decoder = Decoder(
                    FakeResolver(txt={"example.org": [f"v=spf1 {raw_term}"]})
                )
                term = decoder.get_record_from_domain("example.org").terms[0]
                self.assertEqual(term, expected_term)
                self.assertEqual(str(term), expected_string or raw_term)

    def testInvalidTerms(self):
        decoder = Decoder(FakeResolver())
        for raw_term in INVALID_TERMS:
            with self.subTest(term=raw_term):
                with self.assertRaises(InvalidTermException) as context:
                    decoder.get_record_from_txt(f"v=spf1 {raw_term}")
                self.assertEqual(context.exception.term, raw_term)

    def testInvalidMacroInDomainSpec(self):
        decoder = Decoder(FakeResolver())
        with self.assertRaises(InvalidMacroStringException):
            decoder.get_record_from_txt("v=spf1 a:%(r))")

    def testRecord(self):
        """Records keep the order of their terms"""
        decoder = Decoder(FakeResolver())
        self.assertIsNone(decoder.get_record_from_txt("v:spf1 -all"))
        record = decoder.get_record_from_txt(
            "v=spf1 ~all foo=bar  -ip4:127.0.0.1 +ip6:::1 redirect=example.com"
        )
        all_mechanism = AllMechanism(Mechanism.QUALIFIER_SOFTFAIL)
        unknown_modifier = UnknownModifier("foo", "bar")
        ip4 = Ip4Mechanism(Mechanism.QUALIFIER_FAIL, "127.0.0.1")
        ip6 = Ip6Mechanism(Mechanism.QUALIFIER_PASS, "::1")
        redirect = RedirectModifier("example.com")
        self.assertEqual(
            record.terms, [all_mechanism, unknown_modifier, ip4, ip6, redirect]
        )
        self.assertEqual(record.mechanisms, [all_mechanism, ip4, ip6])
        self.assertEqual(record.modifiers, [unknown_modifier, redirect])
        self.assertEqual(
            str(record),
            "v=spf1 ~all foo=bar -ip4:127.0.0.1 ip6:::1 redirect=example.com",
        )

    def testBuildRecord(self):
        record = (
            Record()
            .add_term(MxMechanism(P))
            .add_term(IncludeMechanism(P, "_spf.%{d2}"))
            .add_term(AllMechanism(Mechanism.QUALIFIER_FAIL))
        )
        self.assertEqual(str(record), "v=spf1 mx include:_spf.%{d2} -all")
        self.assertTrue(record.terms[1].domain_spec.contains_placeholders)

    def testTermsAreHashable(self):
        """Equal terms and records can be used as set members and dict keys"""
        decoder = Decoder(FakeResolver())
        terms = {
            AllMechanism(P),
            decoder.parse_term("+all"),
            Ip4Mechanism(P, "192.0.2.1"),
            decoder.parse_term("ip4:192.0.2.1/32"),
            decoder.parse_term("include:_spf.%{d2}"),
            IncludeMechanism(P, "_spf.%{d2}"),
        }
        self.assertEqual(len(terms), 3)
        self.assertIn(AllMechanism(P), terms)
        self.assertNotIn(AllMechanism(Mechanism.QUALIFIER_FAIL), terms)

        record = decoder.get_record_from_txt("v=spf1 mx -all")
        seen = {record: "example.com"}
        self.assertEqual(
            seen[decoder.get_record_from_txt("v=spf1 +mx -all")], "example.com"
        )


class MacroStringTest(unittest.TestCase):
    def testPlaceholderExpansion(self):
        """Macro strings are decoded and expanded"""
        state, state_ipv6 = _placeholder_states()
        domain = "spf.example.org"
        ip6_nibbles = "1.2.3.4.a.b.c.d" + ".0" * 20 + ".a.b.1.2"
        cases = [
            ("%{s}", [Placeholder("s")], state, "john-doe@sender.email.address.com"),
            ("%{l}", [Placeholder("l")], state, "john-doe"),
            ("%{l-}", [Placeholder("l", None, False, "-")], state, "john.doe"),
            ("%{lr}", [Placeholder("l", None, True)], state, "john-doe"),
            ("%{lr-}", [Placeholder("l", None, True, "-")], state, "doe.john"),
            ("%{l1r-}", [Placeholder("l", 1, True, "-")], state, "john"),
            ("%{o}", [Placeholder("o")], state, "sender.email.address.com"),
            ("%{d}", [Placeholder("d")], state, domain),
            ("%{d4}", [Placeholder("d", 4)], state, domain),
            ("%{d3}", [Placeholder("d", 3)], state, domain),
            ("%{d2}", [Placeholder("d", 2)], state, "example.org"),
            ("%{d1}", [Placeholder("d", 1)], state, "org"),
            ("%{dr}", [Placeholder("d", None, True)], state, "org.example.spf"),
            ("%{d2r}", [Placeholder("d", 2, True)], state, "example.spf"),
            ("%{i}", [Placeholder("i")], state, "10.20.30.40"),
            ("%{i}", [Placeholder("i")], state_ipv6, ip6_nibbles),
            ("%{p}", [Placeholder("p")], state, "resolved.sender.email.address.com"),
            ("%{p2}", [Placeholder("p", 2)], state, "address.com"),
            (
                "%{pr}",
                [Placeholder("p", None, True)],
                state,
                "com.address.email.sender.resolved",
            ),
            ("%{v}", [Placeholder("v")], state, "in-addr"),
            ("%{v}", [Placeholder("v")], state_ipv6, "ip6"),
            ("%{h}", [Placeholder("h")], state, "helo.sender.example.com"),
            ("%{c}", [Placeholder("c")], state, "10.20.30.40"),
            ("%{c}", [Placeholder("c")], state_ipv6, "1234:abcd::ab12"),
            ("%{r}", [Placeholder("r")], state_ipv6, "name.domain.mta"),
            (
                "%{r}",
                [Placeholder("r")],
                MailFromState(Environment("", ""), FakeResolver()),
                UNKNOWN_CHECKER_DOMAIN,
            ),
            (
                "%{ir}.%{v}._spf.%{d2}%%",
                [
                    Placeholder("i", None, True),
                    LiteralString("."),
                    Placeholder("v"),
                    LiteralString("._spf."),
                    Placeholder("d", 2),
                    LiteralString("%%"),
                ],
                state,
                "40.30.20.10.in-addr._spf.example.org%",
            ),
            (
                "%%%-%_%%_%%%_%%%%_%%-1aZz!~",
                [LiteralString("%%%-%_%%_%%%_%%%%_%%-1aZz!~")],
                state,
                "%%20 %_% %%_%-1aZz!~",
            ),
            ("!", [LiteralString("!")], state, "!"),
            ("~", [LiteralString("~")], state, "~"),
            (
                "%{ir}",
                [Placeholder("i", None, True)],
                state_ipv6,
                ".".join(reversed(ip6_nibbles.split("."))),
            ),
            (
                "%{l} denied for %{i}",
                [
                    Placeholder("l"),
                    LiteralString(" denied for "),
                    Placeholder("i"),
                ],
                state,
                "john-doe denied for 10.20.30.40",
            ),
        ]
        decoder = MacroStringDecoder()
        expander = Expander()
        for string, chunks, case_state, expected in cases:
            with self.subTest(macro_string=string):
                case_state.reset_dns_lookups_count()
                macro_string = decoder.decode(string, exp=True)
                self.assertEqual(macro_string, MacroString(chunks))
                self.assertEqual(
                    expander.expand(macro_string, domain, case_state), expected
                )
                self.assertEqual(str(macro_string), string)

    def testTimestamp(self):
        state = MailFromState(Environment("", ""), FakeResolver())
        macro_string = MacroStringDecoder().decode("%{t}", exp=True)
        value = Expander().expand(macro_string, "example.org", state)
        self.assertRegex(value, r"^\d{%d}$" % len(str(int(time.time()))))

    def testValidatedDomainCountsOneLookup(self):
        """The reverse lookup of %{p} is performed and counted once"""
        state, _ = _placeholder_states()
        state.reset_dns_lookups_count()
        macro_string = MacroStringDecoder().decode("%{p}.%{p2}")
        Expander().expand(macro_string, "example.org", state)
        self.assertEqual(state.dns_lookups_count, 1)

    def testMissingEnvironmentValues(self):
        empty_state = MailFromState(Environment("", ""), FakeResolver())
        invalid_sender_state = MailFromState(
            Environment("", "invalid", "invalid"), FakeResolver()
        )
        no_checker_state = MailFromState(
            Environment("", "", "", ""), FakeResolver()
        )
        cases = [
            ("s", "s", empty_state),
            ("l", "s", empty_state),
            ("l", "l", invalid_sender_state),
            ("o", "s", empty_state),
            ("o", "o", invalid_sender_state),
            ("i", "i", empty_state),
            ("p", "i", empty_state),
            ("v", "i", empty_state),
            ("h", "h", empty_state),
            ("c", "i", empty_state),
            ("r", "r", no_checker_state),
        ]
        expander = Expander()
        for letter, missing_letter, state in cases:
            with self.subTest(letter=letter):
                with self.assertRaises(MissingEnvironmentValueException) as context:
                    expander.expand(
                        MacroString([Placeholder(letter)]), "mail.example.org", state
                    )
                self.assertEqual(
                    context.exception.environment_value_identifier, missing_letter
                )

    def testWrongMacroStrings(self):
        decoder = MacroStringDecoder()
        for string in [
            "",
            chr(0x00),
            chr(0x10),
            chr(0x1F),
            "\n",
            "\r",
            "\t",
            " ",
            chr(0x7F),
            chr(0x80),
            chr(0x81),
            chr(0xFF),
            "%",
            "%%%",
            "%%%%%",
            "100%",
            "%100",
            "%{c}",
            "%{r}",
            "%{t}",
            "%{i0}",
            "%{irX}",
            "%{i1rX}",
            "%{S}",
        ]:
            with self.subTest(macro_string=string):
                with self.assertRaises(InvalidMacroStringException):
                    decoder.decode(string)

    def testSyntaxErrorMarker(self):
        """Syntax errors mark the offending position"""
        with self.assertRaises(InvalidMacroStringException) as context:
            MacroStringDecoder().decode("foo.%bar")
        self.assertIn("foo.➞%bar", str(context.exception))

    def testEmpty(self):
        decoder = MacroStringDecoder()
        self.assertTrue(decoder.decode("", allow_empty=True).is_empty)
        with self.assertRaises(InvalidMacroStringException):
            decoder.decode("")


class EnvironmentTest(unittest.TestCase):
    def testEnvironment(self):
        environment = Environment("", "")
        self.assertIsNone(environment.client_ip)
        self.assertEqual(environment.mail_from, "")
        self.assertEqual(environment.helo_domain, "")
        self.assertEqual(environment.checker_domain, UNKNOWN_CHECKER_DOMAIN)
        with self.assertRaises(InvalidIPAddressException):
            Environment("invalid.ip", "")
        environment = Environment(ipaddress.ip_address("0000::00:0:2"), "")
        self.assertEqual(str(environment.client_ip), "::2")
        environment = Environment("0000::00:0:fA", "")
        self.assertEqual(str(environment.client_ip), "::fa")

    def testHeloDomainFromMailFrom(self):
        environment = Environment("192.0.2.1", None, "user@example.com")
        self.assertEqual(environment.helo_domain, "example.com")
        self.assertEqual(environment.mail_from_domain, "example.com")

    def testSenders(self):
        environment = Environment("192.0.2.1", "helo.example.net", "user@example.com")
        helo_state = HeloDomainState(environment, FakeResolver())
        self.assertEqual(helo_state.sender, "postmaster@helo.example.net")
        self.assertEqual(helo_state.sender_local_part, "postmaster")
        mail_from_state = MailFromState(environment, FakeResolver())
        self.assertEqual(mail_from_state.sender_domain, "example.com")


class SemanticValidatorTest(unittest.TestCase):
    def setUp(self):
        self.decoder = Decoder(FakeResolver())
        self.validator = SemanticValidator()

    def testNoIssues(self):
        for txt_record in [
            "v=spf1 a mx include:d1.com include:d2.com include:d3.com "
            "include:d4.com include:d5.com include:d6.com include:d7.com "
            "redirect=foo.bar",
            "v=spf1 a mx all",
            "v=spf1 all",
            "v=spf1 redirect=foo.bar",
            "v=spf1 mx redirect=foo.bar",
            "v=spf1 mx exp=baz",
            "v=spf1 mx redirect=foo.bar exp=baz",
        ]:
            record = self.decoder.get_record_from_txt(txt_record)
            self.assertEqual(self.validator.validate(record), [], txt_record)

    def testIssues(self):
        every_issue = (
            "v=spf1 all redirect=example1.org redirect=example2.org "
            "ptr:foo.bar mx include=example3.org"
        )
        duplicates = "v=spf1 mx redirect=foo.bar exp=baz redirect=qux exp=foo exp=bar"
        cases = [
            (
                "v=spf1 a mx include:d1.com include:d2.com include:d3.com "
                "include:d4.com include:d5.com include:d6.com include:d7.com "
                "include:d8.com redirect=foo.bar",
                [Issue.CODE_TOO_MANY_DNS_LOOKUPS],
                None,
            ),
            ("v=spf1 a all mx", [Issue.CODE_ALL_NOT_LAST_MECHANISM], None),
            ("v=spf1 all redirect=foo.bar", [Issue.CODE_ALL_AND_REDIRECT], None),
            ("v=spf1 ptr:foo.bar", [Issue.CODE_SHOULD_AVOID_PTR], None),
            ("v=spf1 exp=1 -all", [Issue.CODE_MODIFIER_NOT_AFTER_MECHANISMS], None),
            (
                "v=spf1 redirect=foo.bar all",
                [Issue.CODE_ALL_AND_REDIRECT, Issue.CODE_MODIFIER_NOT_AFTER_MECHANISMS],
                None,
            ),
            (
                "v=spf1 redirect=foo.bar all",
                [Issue.CODE_ALL_AND_REDIRECT, Issue.CODE_MODIFIER_NOT_AFTER_MECHANISMS],
                Issue.LEVEL_NOTICE,
            ),
            (
                "v=spf1 redirect=foo.bar all",
                [Issue.CODE_ALL_AND_REDIRECT],
                Issue.LEVEL_WARNING,
            ),
            ("v=spf1 redirect=foo.bar all", [], Issue.LEVEL_FATAL),
            (
                "v=spf1 mx redirect=foo.bar exp=baz redirect=qux",
                [Issue.CODE_DUPLICATED_MODIFIER],
                None,
            ),
            (duplicates, [Issue.CODE_DUPLICATED_MODIFIER] * 2, None),
            (duplicates, [Issue.CODE_DUPLICATED_MODIFIER] * 2, Issue.LEVEL_FATAL),
            ("v=spf1 mx include=foo", [Issue.CODE_UNKNOWN_MODIFIER], None),
            (
                every_issue,
                [
                    Issue.CODE_ALL_NOT_LAST_MECHANISM,
                    Issue.CODE_ALL_AND_REDIRECT,
                    Issue.CODE_SHOULD_AVOID_PTR,
                    Issue.CODE_MODIFIER_NOT_AFTER_MECHANISMS,
                    Issue.CODE_DUPLICATED_MODIFIER,
                    Issue.CODE_UNKNOWN_MODIFIER,
                ],
                None,
            ),
            (
                every_issue,
                [
                    Issue.CODE_ALL_NOT_LAST_MECHANISM,
                    Issue.CODE_ALL_AND_REDIRECT,
                    Issue.CODE_DUPLICATED_MODIFIER,
                ],
                Issue.LEVEL_WARNING,
            ),
            (every_issue, [Issue.CODE_DUPLICATED_MODIFIER], Issue.LEVEL_FATAL),
        ]
        for txt_record, codes, minimum_level in cases:
            with self.subTest(record=txt_record, minimum_level=minimum_level):
                record = self.decoder.get_record_from_txt(txt_record)
                issues = self.validator.validate(record, minimum_level)
                self.assertEqual(sorted(issue.code for issue in issues), sorted(codes))
                for issue in issues:
                    self.assertIs(issue.record, record)
                    self.assertRegex(str(issue), r"^\[(notice|warning|fatal)\] .")

    def testDuplicatedModifierDescription(self):
        record = self.decoder.get_record_from_txt(
            "v=spf1 -all redirect=a.example redirect=b.example"
        )
        issues = self.validator.validate(record, Issue.LEVEL_FATAL)
        self.assertEqual(
            str(issues[0]),
            "[fatal] The 'redirect' modifier is present more than once (2 times)",
        )


class OnlineSemanticValidatorTest(unittest.TestCase):
    def setUp(self):
        self.resolver = FakeResolver()
        self.validator = OnlineSemanticValidator(Decoder(self.resolver))

    def _check_issues(self, issues, codes, minimum_level):
        self.assertEqual(sorted(issue.code for issue in issues), sorted(codes))
        for issue in issues:
            self.assertIsInstance(issue, OnlineIssue)
            self.assertRegex(str(issue), r"^\[(notice|warning|fatal)\] .")
            if minimum_level == Issue.LEVEL_FATAL:
                self.assertRegex(str(issue), r"^\[fatal\] .")

    def testValidateDomain(self):
        too_many = {
            "test2.example.org": ["v=spf1 ip4:1.2.3.4 include:test3.example.org ~all"],
            "test3.example.org": ["v=spf1 ip4:1.2.3.4 include:test4.example.org ~all"],
            "test4.example.org": ["v=spf1 ip4:1.2.3.4 include:test5.example.org ~all"],
            "test5.example.org": ["v=spf1 ip4:1.2.3.4 ~all"],
            "test6.example.org": ["v=spf1 ip4:1.2.3.4 ~all"],
            "test7.example.org": [
                "v=spf1 include:test8.example.org include:test9.example.org "
                "include:test10.example.org ~all"
            ],
            "test8.example.org": ["v=spf1 ip4:1.2.3.4 ~all"],
            "test9.example.org": ["v=spf1 ~all"],
            "test10.example.org": ["v=spf1 ip4:1.2.3.4 ~all"],
        }
        eleven = dict(too_many)
        eleven["test1.example.org"] = [
            "v=spf1 mx a include:test2.example.org include:test6.example.org "
            "include:test7.example.org ip4:1.2.3.4 ~all"
        ]
        ten = dict(too_many)
        ten["test1.example.org"] = [
            "v=spf1 a include:test2.example.org include:test6.example.org "
            "include:test7.example.org ip4:1.2.3.4 ~all"
        ]
        malformed = {"test.example.org": ["v=spf1 mal formed!"]}
        placeholder = {"test.example.org": ["v=spf1 include:_spf.%{d2} -all"]}
        cases = [
            ("", [OnlineIssue.CODE_NODOMAIN_NORECORD_PROVIDED], {}, None),
            (
                "",
                [OnlineIssue.CODE_NODOMAIN_NORECORD_PROVIDED],
                {},
                Issue.LEVEL_FATAL,
            ),
            ("test.example.org", [OnlineIssue.CODE_RECORD_NOT_FOUND], {}, None),
            (
                "test.example.org",
                [OnlineIssue.CODE_RECORD_FETCH_OR_PARSE_FAILED],
                malformed,
                None,
            ),
            (
                "test.example.org",
                [OnlineIssue.CODE_RECORD_FETCH_OR_PARSE_FAILED],
                malformed,
                Issue.LEVEL_FATAL,
            ),
            (
                "test.example.org",
                [OnlineIssue.CODE_RECURSIVE_DOMAIN_DETECTED],
                {"test.example.org": ["v=spf1 redirect=test.example.org"]},
                None,
            ),
            (
                "test1.example.org",
                [OnlineIssue.CODE_RECURSIVE_DOMAIN_DETECTED],
                {
                    "test1.example.org": ["v=spf1 include:test2.example.org -all"],
                    "test2.example.org": ["v=spf1 include:test3.example.org -all"],
                    "test3.example.org": ["v=spf1 include:test1.example.org -all"],
                },
                None,
            ),
            (
                "test1.example.org",
                [OnlineIssue.CODE_RECURSIVE_DOMAIN_DETECTED],
                {
                    "test1.example.org": ["v=spf1 include:test2.example.org -all"],
                    "test2.example.org": ["v=spf1 include:test3.example.org -all"],
                    "test3.example.org": ["v=spf1 redirect=test2.example.org"],
                },
                None,
            ),
            (
                "test1.example.org",
                [],
                {
                    "test1.example.org": [
                        "v=spf1 include:test2.example.org "
                        "include:test3.example.org -all"
                    ],
                    "test2.example.org": ["v=spf1 include:test4.example.org -all"],
                    "test3.example.org": ["v=spf1 include:test4.example.org -all"],
                    "test4.example.org": ["v=spf1 -all"],
                },
                None,
            ),
            (
                "test.example.org",
                [OnlineIssue.CODE_DOMAIN_WITH_PLACEHOLDER],
                placeholder,
                None,
            ),
            ("test.example.org", [], placeholder, Issue.LEVEL_WARNING),
            (
                "test1.example.org",
                [OnlineIssue.CODE_TOO_MANY_DNS_LOOKUPS_ONLINE],
                eleven,
                None,
            ),
            ("test1.example.org", [], ten, None),
        ]
        for index, (domain, codes, txt_records, minimum_level) in enumerate(cases):
            with self.subTest(index=index):
                self.resolver.txt = txt_records
                issues = self.validator.validate_domain(domain, minimum_level)
                self._check_issues(issues, codes, minimum_level)

    def testValidateRawRecord(self):
        cases = [
            ("", [OnlineIssue.CODE_RECORD_PARSE_FAILED], None),
            ("", [OnlineIssue.CODE_RECORD_PARSE_FAILED], Issue.LEVEL_FATAL),
            ("malformed", [OnlineIssue.CODE_RECORD_PARSE_FAILED], None),
            ("v=spf1 malformed", [OnlineIssue.CODE_RECORD_PARSE_FAILED], None),
            (
                "v=spf1 malformed",
                [OnlineIssue.CODE_RECORD_PARSE_FAILED],
                Issue.LEVEL_FATAL,
            ),
            ("v=spf1 -all", [], None),
        ]
        for txt_record, codes, minimum_level in cases:
            with self.subTest(record=txt_record):
                issues = self.validator.validate_raw_record(
                    txt_record, "", minimum_level
                )
                self._check_issues(issues, codes, minimum_level)

    def testValidateRecord(self):
        record = Decoder(FakeResolver()).get_record_from_txt("v=spf1 -all")
        self.assertEqual(self.validator.validate_record(record), [])

    def testTooManyLookupsIssueCarriesTree(self):
        includes = " ".join(f"include:d{i}.example.org" for i in range(11))
        self.resolver.txt = {"example.org": [f"v=spf1 {includes} -all"]}
        for i in range(11):
            self.resolver.txt[f"d{i}.example.org"] = ["v=spf1 ip4:192.0.2.1 -all"]
        issues = [
            issue
            for issue in self.validator.validate_domain("example.org")
            if issue.code == OnlineIssue.CODE_TOO_MANY_DNS_LOOKUPS_ONLINE
        ]
        self.assertEqual(len(issues), 1)
        self.assertEqual(issues[0].total_lookup_count, 11)
        self.assertEqual(len(issues[0].to_dict()["dns_lookups"]), 11)

    def testLookupTree(self):
        """The tree of the DNS lookups follows includes and redirects"""
        self.resolver.txt = {
            "example.org": ["v=spf1 mx include:_spf.example.org redirect=r.example.org"],
            "_spf.example.org": ["v=spf1 a exists:%{i}.example.org -all"],
            "r.example.org": ["v=spf1 ip4:192.0.2.1 -all"],
        }
        lookups = self.validator.get_lookups_for_domain("example.org")
        self.assertEqual(
            [lookup.name for lookup in lookups],
            ["mx", "include:_spf.example.org", "redirect=r.example.org"],
        )
        include = lookups[1]
        self.assertEqual(include.record, "v=spf1 a exists:%{i}.example.org -all")
        self.assertEqual(
            [reference.name for reference in include.references],
            ["a", "exists:%{i}.example.org"],
        )
        self.assertEqual(include.lookup_count, 3)
        self.assertEqual(sum(lookup.lookup_count for lookup in lookups), 5)
        self.assertEqual(lookups[2].references, [])

    def testLookupTreeForRawRecord(self):
        self.assertEqual(self.validator.get_lookups_for_raw_record("malformed"), [])
        lookups = self.validator.get_lookups_for_raw_record("v=spf1 a mx -all")
        self.assertEqual([lookup.name for lookup in lookups], ["a", "mx"])


def _mock_dns_resolver(txt_records):
    """Builds a dnspython resolver answering TXT queries from a dictionary"""

    def resolve(domain, record_type, lifetime=None):
        if record_type == "TXT" and domain in txt_records:
            return [
                SimpleNamespace(strings=[record.encode()])
                for record in txt_records[domain]
            ]
        raise dns.resolver.NXDOMAIN()

    resolver = mock.Mock()
    resolver.resolve.side_effect = resolve
    return resolver


class StandardResolverTest(unittest.TestCase):
    def testEmptyDomain(self):
        with self.assertRaises(DNSResolutionException) as context:
            StandardResolver(resolver=mock.Mock()).get_txt_records("")
        self.assertEqual(context.exception.domain, "")

    def testMissingDomain(self):
        resolver = StandardResolver(resolver=_mock_dns_resolver({}))
        self.assertEqual(resolver.get_txt_records("example.com"), [])

    def testQueryFailure(self):
        dns_resolver = mock.Mock()
        dns_resolver.resolve.side_effect = dns.resolver.NoNameservers()
        with self.assertRaises(DNSResolutionException) as context:
            StandardResolver(resolver=dns_resolver).get_txt_records("example.com")
        self.assertEqual(context.exception.domain, "example.com")

    def testTimeoutRetries(self):
        dns_resolver = mock.Mock()
        dns_resolver.resolve.side_effect = dns.resolver.LifetimeTimeout(
            timeout=1.0, errors=[]
        )
        resolver = StandardResolver(resolver=dns_resolver, timeout_retries=2)
        with self.assertRaises(DNSResolutionException):
            resolver.get_txt_records("example.com")
        self.assertEqual(dns_resolver.resolve.call_count, 3)

    def testCache(self):
        dns_resolver = _mock_dns_resolver({"example.com": ["v=spf1 -all"]})
        resolver = StandardResolver(
            resolver=dns_resolver, cache=checkspf.utils.new_dns_cache()
        )
        self.assertEqual(resolver.get_txt_records("Example.com"), ["v=spf1 -all"])
        self.assertEqual(resolver.get_txt_records("example.com"), ["v=spf1 -all"])
        self.assertEqual(dns_resolver.resolve.call_count, 1)

    def testMxRecords(self):
        dns_resolver = mock.Mock()
        dns_resolver.resolve.return_value = [
            SimpleNamespace(to_text=lambda: "20 mx2.example.com."),
            SimpleNamespace(to_text=lambda: "10 MX1.example.com."),
        ]
        resolver = StandardResolver(resolver=dns_resolver)
        self.assertEqual(
            resolver.get_mx_records("example.com"),
            ["mx1.example.com", "mx2.example.com"],
        )


class APITest(unittest.TestCase):
    def testCheckSPF(self):
        dns_resolver = _mock_dns_resolver(
            {"example.com": ["v=spf1 ip4:192.0.2.0/24 -all"]}
        )
        results = checkspf.check_spf(
            "192.0.2.10", "user@example.com", resolver=dns_resolver
        )
        self.assertEqual(results["result"], "pass")
        self.assertEqual(results["matched_mechanism"], "ip4:192.0.2.0/24")
        self.assertEqual(results["helo_domain"], "example.com")
        self.assertEqual(results["client_ip"], "192.0.2.10")

    def testCheckSPFInvalidIP(self):
        with self.assertRaises(InvalidIPAddressException):
            checkspf.check_spf("not-an-ip", "user@example.com", resolver=mock.Mock())

    def testValidateSPF(self):
        dns_resolver = _mock_dns_resolver(
            {
                "example.com": ["v=spf1 include:_spf.example.com mx -all"],
                "_spf.example.com": ["v=spf1 ip4:192.0.2.1 -all"],
            }
        )
        results = checkspf.validate_spf("Example.com.", resolver=dns_resolver)
        self.assertEqual(results["domain"], "example.com")
        self.assertTrue(results["valid"])
        self.assertEqual(results["issues"], [])
        self.assertEqual(results["dns_lookup_count"], 2)
        self.assertEqual(
            results["dns_lookups"][0]["record"], "v=spf1 ip4:192.0.2.1 -all"
        )

    def testValidateSPFMissingRecord(self):
        results = checkspf.validate_spf(
            "example.com", resolver=_mock_dns_resolver({})
        )
        self.assertFalse(results["valid"])
        self.assertEqual(
            results["issues"][0]["code"], OnlineIssue.CODE_RECORD_NOT_FOUND
        )

    def testResultsToCSV(self):
        results = {
            "client_ip": "192.0.2.1",
            "helo_domain": "example.com",
            "mail_from": "user@example.com",
            "result": "fail",
            "matched_mechanism": "-all",
            "fail_explanation": None,
            "messages": ["one", "two"],
        }
        rows = checkspf.results_to_csv_rows(results)
        self.assertEqual(rows[0]["messages"], "one|two")
        csv = checkspf.results_to_csv(results)
        self.assertTrue(
            csv.startswith(
                "client_ip,helo_domain,mail_from,result,matched_mechanism,"
                "fail_explanation,messages"
            )
        )

    def testResultsToJSON(self):
        self.assertEqual(
            re.sub(r"\s", "", checkspf.results_to_json({"result": "none"})),
            '{"result":"none"}',
        )


if __name__ == "__main__":
    unittest.main(verbosity=2)
