#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Grades the SPF, DKIM and DMARC posture of email domains"""

from __future__ import annotations

import os
from argparse import ArgumentParser

import logging

from mailposture import (
    __version__,
    check_domains,
    results_to_json,
    results_to_csv,
    output_to_file,
)
from mailposture._constants import (
    DNS_TIMEOUT,
    DNS_TIMEOUT_RETRIES,
    PIPELINE_TIMEOUT,
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


def _read_domains_file(path: str) -> list[str]:
    with open(path) as domains_file:
        domains = set(
            line.rstrip(".\r\n").strip().lower().split(",")[0]
            for line in domains_file.readlines()
        )
    return sorted(domain for domain in domains if "." in domain)


def _main():
    """Called when the module in executed"""
    arg_parser = ArgumentParser(description=__doc__)
    arg_parser.add_argument(
        "domain",
        nargs="+",
        help="one or more domains, or a single path to a "
        "file containing a list of domains",
    )
    arg_parser.add_argument(
        "-s",
        "--selector",
        nargs="+",
        help="DKIM selectors to check (default: a list of common selectors)",
    )
    arg_parser.add_argument(
        "-d",
        "--details",
        action="store_true",
        help="include the full results of each protocol in the output",
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
        help="number of seconds to wait for an answer from DNS "
        f"(default {DNS_TIMEOUT})",
        type=float,
        default=DNS_TIMEOUT,
    )
    arg_parser.add_argument(
        "--timeout-retries",
        help="number of times to reattempt a query after a timeout "
        f"(default {DNS_TIMEOUT_RETRIES})",
        type=int,
        default=DNS_TIMEOUT_RETRIES,
    )
    arg_parser.add_argument(
        "--pipeline-timeout",
        help="number of seconds to wait for each protocol check "
        f"(default {PIPELINE_TIMEOUT})",
        type=float,
        default=PIPELINE_TIMEOUT,
    )
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)
    arg_parser.add_argument(
        "-w",
        "--wait",
        type=float,
        help="number of seconds to wait between checking domains (default 0.0)",
        default=0.0,
    )
    arg_parser.add_argument(
        "--debug", action="store_true", help="enable debugging output"
    )

    args = arg_parser.parse_args()

    logging_format = "%(asctime)s - %(levelname)s: %(message)s"
    logging.basicConfig(level=logging.WARNING, format=logging_format)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug output enabled")
    domains = args.domain
    if len(domains) == 1 and os.path.exists(domains[0]):
        domains = _read_domains_file(domains[0])

    results = check_domains(
        domains,
        selectors=args.selector,
        nameservers=args.nameserver,
        timeout=args.timeout,
        timeout_retries=args.timeout_retries,
        pipeline_timeout=args.pipeline_timeout,
        include_details=args.details,
        wait=args.wait,
    )

    if args.output is None:
        if args.format.lower() == "json":
            results = results_to_json(results)
        elif args.format.lower() == "csv":
            results = results_to_csv(results)
        print(results)
    else:
        for path in args.output:
            if path.lower().endswith(".json"):
                output_to_file(path, results_to_json(results))
            elif path.lower().endswith(".csv"):
                output_to_file(path, results_to_csv(results))
            else:
                logging.error(f"Output path {path} must end in .json or .csv")


if __name__ == "__main__":
    _main()
