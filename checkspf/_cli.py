#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Evaluates and validates Sender Policy Framework (SPF) records"""

from __future__ import annotations

import os
import sys
from argparse import ArgumentParser

import logging

from checkspf import (
    __version__,
    check_spf,
    validate_spf,
    results_to_json,
    results_to_csv,
    output_to_file,
)
from checkspf.semantic import Issue
from checkspf.state import UNKNOWN_CHECKER_DOMAIN
from checkspf.utils import SPFError, new_dns_cache

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

MINIMUM_LEVELS = {
    "notice": Issue.LEVEL_NOTICE,
    "warning": Issue.LEVEL_WARNING,
    "fatal": Issue.LEVEL_FATAL,
}


def _read_domains(domains: list[str]) -> list[str]:
    if len(domains) == 1 and os.path.exists(domains[0]):
        with open(domains[0]) as domains_file:
            domains = sorted(
                list(
                    set(
                        map(
                            lambda d: d.rstrip(".\r\n").strip().lower().split(",")[0],
                            domains_file.readlines(),
                        )
                    )
                )
            )
        domains = [domain for domain in domains if "." in domain]
    return domains


def _main():
    """Called when the module in executed"""
    arg_parser = ArgumentParser(description=__doc__)
    arg_parser.add_argument(
        "-l",
        "--lint",
        nargs="+",
        metavar="DOMAIN",
        help="validate the SPF records of one or more domains, or of the "
        "domains listed in a single file, instead of checking a sender",
    )
    arg_parser.add_argument("-i", "--ip", help="the IP address of the SMTP client")
    arg_parser.add_argument(
        "-m", "--mail-from", default="", help='the "MAIL FROM" email address'
    )
    arg_parser.add_argument(
        "--helo",
        help='the "HELO"/"EHLO" domain (default: the domain of the '
        '"MAIL FROM" address)',
    )
    arg_parser.add_argument(
        "--checker-domain",
        default=UNKNOWN_CHECKER_DOMAIN,
        help="the domain of the host performing the check "
        f"(default {UNKNOWN_CHECKER_DOMAIN})",
    )
    arg_parser.add_argument(
        "--skip-helo",
        action="store_true",
        help='do not check the "HELO"/"EHLO" domain',
    )
    arg_parser.add_argument(
        "--skip-mail-from",
        action="store_true",
        help='do not check the "MAIL FROM" address',
    )
    arg_parser.add_argument(
        "--minimum-level",
        choices=list(MINIMUM_LEVELS.keys()),
        help="only report validation issues of this level or higher",
    )
    arg_parser.add_argument(
        "-f",
        "--format",
        default="json",
        help="specify JSON or CSV screen output format",
    )
    arg_parser.add_argument(
        "-o",
        "--output",
        nargs="+",
        help="one or more file paths to output to "
        "(must end in .json or .csv) "
        "(silences screen output)",
    )
    arg_parser.add_argument(
        "-n", "--nameserver", nargs="+", help="nameservers to query"
    )
    arg_parser.add_argument(
        "-t",
        "--timeout",
        help="number of seconds to wait for an answer from DNS (default 2.0)",
        type=float,
        default=2.0,
    )
    arg_parser.add_argument(
        "--timeout-retries",
        help="number of times to reattempt a query after a timeout (default 2)",
        type=int,
        default=2,
    )
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)
    arg_parser.add_argument(
        "--debug", action="store_true", help="enable debugging output"
    )

    args = arg_parser.parse_args()

    logging_format = "%(asctime)s - %(levelname)s: %(message)s"
    logging.basicConfig(level=logging.WARNING, format=logging_format)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug output enabled")

    if args.lint is None and args.ip is None:
        arg_parser.error("either --ip or --lint is required")

    if args.lint is not None:
        minimum_level = None
        if args.minimum_level is not None:
            minimum_level = MINIMUM_LEVELS[args.minimum_level]
        cache = new_dns_cache()
        results = [
            validate_spf(
                domain,
                minimum_level=minimum_level,
                nameservers=args.nameserver,
                timeout=args.timeout,
                timeout_retries=args.timeout_retries,
                cache=cache,
            )
            for domain in _read_domains(args.lint)
        ]
        if len(results) == 1:
            results = results[0]
    else:
        try:
            results = check_spf(
                args.ip,
                args.mail_from,
                args.helo,
                checker_domain=args.checker_domain,
                check_helo=not args.skip_helo,
                check_mail_from=not args.skip_mail_from,
                nameservers=args.nameserver,
                timeout=args.timeout,
                timeout_retries=args.timeout_retries,
            )
        except SPFError as e:
            logging.error(str(e))
            sys.exit(1)

    if args.output is None:
        if args.format.lower() == "json":
            results = results_to_json(results)
        elif args.format.lower() == "csv":
            results = results_to_csv(results)
        print(results)
    else:
        for path in args.output:
            json_path = path.lower().endswith(".json")
            csv_path = path.lower().endswith(".csv")

            if not json_path and not csv_path:
                logging.error(f"Output path {path} must end in .json or .csv")
            else:
                if path.lower().endswith(".json"):
                    output_to_file(path, results_to_json(results))
                elif path.lower().endswith(".csv"):
                    output_to_file(path, results_to_csv(results))


if __name__ == "__main__":
    _main()
