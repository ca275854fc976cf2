# -*- coding: utf-8 -*-

"""Grades the SPF, DKIM and DMARC posture of email domains"""

from __future__ import annotations

import concurrent.futures
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from csv import DictWriter
from functools import partial
from io import StringIO
from time import monotonic, sleep
from typing import Callable, Optional, TypedDict, Union
from uuid import uuid4
from collections.abc import Sequence

import dns.resolver
from dns.nameserver import Nameserver

import mailposture._constants
from mailposture._constants import (
    DEFAULT_DKIM_SELECTORS,
    DNS_TIMEOUT,
    DNS_TIMEOUT_RETRIES,
    PIPELINE_TIMEOUT,
)
from mailposture.cache import ResultCache
from mailposture.dkim import check_dkim, dkim_failure_results
from mailposture.dmarc import check_dmarc, dmarc_failure_results
from mailposture.scoring import ProtocolScore, get_grade, get_percentage
from mailposture.spf import check_spf, spf_failure_results
from mailposture.utils import InvalidDomainInput, utc_timestamp, validate_domain

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


__version__ = mailposture._constants.__version__

PROTOCOLS = ("spf", "dkim", "dmarc")
TIMED_OUT = "timed out"


class ProtocolScores(TypedDict):
    spf: ProtocolScore
    dkim: ProtocolScore
    dmarc: ProtocolScore


class SecurityReport(TypedDict, total=False):
    domain: str
    scores: ProtocolScores
    totalScore: int
    maxPossibleScore: int
    percentage: int
    grade: str
    requestId: str
    responseTime: int
    timestamp: str
    details: dict


def _build_pipelines(
    domain: str,
    protocols: Sequence[str],
    *,
    selectors: Optional[Sequence[str]] = None,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    cache: Optional[ResultCache] = None,
) -> tuple[dict[str, Callable], dict[str, Callable]]:
    """Returns the check and failure functions of each requested protocol"""
    selectors = list(selectors or DEFAULT_DKIM_SELECTORS)
    dns_options = dict(
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    checks = {
        "spf": partial(check_spf, domain, **dns_options),
        "dkim": partial(check_dkim, domain, selectors=selectors, **dns_options),
        "dmarc": partial(check_dmarc, domain, **dns_options),
    }
    failures = {
        "spf": partial(spf_failure_results, domain),
        "dkim": partial(dkim_failure_results, domain, selectors=selectors),
        "dmarc": partial(dmarc_failure_results, domain),
    }
    cache_keys = {
        "spf": (domain, "spf"),
        "dkim": (domain, "dkim", tuple(selectors)),
        "dmarc": (domain, "dmarc"),
    }
    pipelines = {}
    for protocol in protocols:
        check = checks[protocol]
        if cache is not None:
            check = partial(cache.get_or_compute, cache_keys[protocol], check)
        pipelines[protocol] = check
    return pipelines, {protocol: failures[protocol] for protocol in protocols}


def _run_pipelines(
    domain: str,
    pipelines: dict[str, Callable],
    failures: dict[str, Callable],
    *,
    pipeline_timeout: float = PIPELINE_TIMEOUT,
) -> dict[str, dict]:
    """
    Runs protocol pipelines concurrently and waits for all of them

    A pipeline that does not finish within ``pipeline_timeout`` seconds, or
    that fails unexpectedly, is replaced by its failure results. Other
    pipelines are not affected.

    Args:
        domain (str): The domain being checked
        pipelines (dict): Protocol names mapped to functions that check it
        failures (dict): Protocol names mapped to functions that build
                         failure results from a message
        pipeline_timeout (float): Seconds to wait for the pipelines

    Returns:
        dict: Protocol names mapped to their results
    """
    executor = ThreadPoolExecutor(
        max_workers=len(pipelines), thread_name_prefix="mailposture"
    )
    try:
        futures = {
            protocol: executor.submit(pipeline)
            for protocol, pipeline in pipelines.items()
        }
        _, not_done = concurrent.futures.wait(
            futures.values(), timeout=pipeline_timeout
        )
        results = {}
        for protocol, future in futures.items():
            if future in not_done:
                logging.warning(
                    f"The {protocol} check for {domain} did not finish within "
                    f"{pipeline_timeout} seconds"
                )
                future.cancel()
                results[protocol] = failures[protocol](TIMED_OUT)
                continue
            try:
                results[protocol] = future.result()
            except Exception as error:
                logging.error(f"The {protocol} check for {domain} failed: {error}")
                results[protocol] = failures[protocol](f"Unexpected error: {error}")
    finally:
        # Do not block on pipelines that have timed out
        executor.shutdown(wait=False)
    return results


def _envelope(started: float) -> dict:
    return {
        "requestId": str(uuid4()),
        "responseTime": int((monotonic() - started) * 1000),
        "timestamp": utc_timestamp(),
    }


def _check(
    domain: str,
    protocols: Sequence[str],
    *,
    selectors: Optional[Sequence[str]] = None,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    pipeline_timeout: float = PIPELINE_TIMEOUT,
    cache: Optional[ResultCache] = None,
) -> tuple[str, dict[str, dict]]:
    domain = validate_domain(domain)
    logging.debug(f"Checking: {domain}")
    pipelines, failures = _build_pipelines(
        domain,
        protocols,
        selectors=selectors,
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
        cache=cache,
    )
    results = _run_pipelines(
        domain, pipelines, failures, pipeline_timeout=pipeline_timeout
    )
    return domain, results


def spf_report(domain: str, **kwargs) -> dict:
    """
    Checks the SPF chain of a domain and wraps the results in a report
    envelope

    Args:
        domain (str): A domain name
        **kwargs: Options for :func:`check_domain`

    Returns:
        dict: A ``dict`` with the following keys:
            - ``domain``
            - ``spfRecords`` - The resolved SPF chain
            - ``validationResults`` - The named SPF checks
            - ``scoringResults`` - The SPF protocol score
            - ``requestId``, ``responseTime`` and ``timestamp``

    Raises:
        :exc:`mailposture.utils.InvalidDomainInput`
    """
    started = monotonic()
    domain, results = _check(domain, ["spf"], **kwargs)
    spf = results["spf"]
    report = {
        "domain": domain,
        "spfRecords": spf["spfRecords"],
        "validationResults": spf["validationResults"],
        "scoringResults": spf["scoringResults"],
    }
    report.update(_envelope(started))
    return report


def dkim_report(domain: str, **kwargs) -> dict:
    """
    Checks the DKIM selectors of a domain and wraps the results in a report
    envelope

    Args:
        domain (str): A domain name
        **kwargs: Options for :func:`check_domain`

    Returns:
        dict: A ``dict`` with the following keys:
            - ``domain``
            - ``records`` - The parsed DKIM records
            - ``score`` - The DKIM protocol score
            - ``requestId``, ``responseTime`` and ``timestamp``

    Raises:
        :exc:`mailposture.utils.InvalidDomainInput`
    """
    started = monotonic()
    domain, results = _check(domain, ["dkim"], **kwargs)
    dkim = results["dkim"]
    report = {"domain": domain, "records": dkim["records"], "score": dkim["score"]}
    report.update(_envelope(started))
    return report


def dmarc_report(domain: str, **kwargs) -> dict:
    """
    Checks the DMARC record of a domain and wraps the results in a report
    envelope

    Args:
        domain (str): A domain name
        **kwargs: Options for :func:`check_domain`

    Returns:
        dict: A ``dict`` with the following keys:
            - ``record`` - The DMARC record
            - ``score`` - The DMARC protocol score
            - ``requestId``, ``responseTime`` and ``timestamp``

    Raises:
        :exc:`mailposture.utils.InvalidDomainInput`
    """
    started = monotonic()
    _, results = _check(domain, ["dmarc"], **kwargs)
    dmarc = results["dmarc"]
    report = {"record": dmarc["record"], "score": dmarc["score"]}
    report.update(_envelope(started))
    return report


def check_domain(
    domain: str,
    *,
    selectors: Optional[Sequence[str]] = None,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    pipeline_timeout: float = PIPELINE_TIMEOUT,
    cache: Optional[ResultCache] = None,
    include_details: bool = False,
) -> SecurityReport:
    """
    Checks the SPF, DKIM and DMARC records of a domain concurrently and
    combines their scores

    Args:
        domain (str): A domain name
        selectors (list): DKIM selectors to check
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query
                               after a transient failure
        pipeline_timeout (float): number of seconds to wait for each protocol
        cache (ResultCache): Reuse recent results for the same domain
        include_details (bool): Include the full results of each protocol
                                under ``details``

    Returns:
        dict: A ``dict`` with the following keys:
            - ``domain``
            - ``scores`` - The ``spf``, ``dkim`` and ``dmarc`` scores
            - ``totalScore``, ``maxPossibleScore``, ``percentage`` and
              ``grade`` - The combined score
            - ``requestId``, ``responseTime`` and ``timestamp``

    Raises:
        :exc:`mailposture.utils.InvalidDomainInput`
    """
    started = monotonic()
    domain, results = _check(
        domain,
        PROTOCOLS,
        selectors=selectors,
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
        pipeline_timeout=pipeline_timeout,
        cache=cache,
    )
    scores: ProtocolScores = {
        "spf": results["spf"]["scoringResults"],
        "dkim": results["dkim"]["score"],
        "dmarc": results["dmarc"]["score"],
    }
    total_score = sum(score["totalScore"] for score in scores.values())
    max_possible_score = sum(score["maxPossibleScore"] for score in scores.values())
    percentage = get_percentage(total_score, max_possible_score)
    report: SecurityReport = {
        "domain": domain,
        "scores": scores,
        "totalScore": total_score,
        "maxPossibleScore": max_possible_score,
        "percentage": percentage,
        "grade": get_grade(percentage),
    }
    if include_details:
        report["details"] = results
    report.update(_envelope(started))
    return report


def check_domains(
    domains: Sequence[str], *, wait: float = 0.0, **kwargs
) -> Union[SecurityReport, list[SecurityReport]]:
    """
    Checks the given domains one after another

    Invalid domains are logged and skipped.

    Args:
        domains (list): A list of domains to check
        wait (float): number of seconds to wait between processing domains
        **kwargs: Options for :func:`check_domain`

    Returns:
        A :class:`SecurityReport`, or a ``list`` of them when more than one
        domain is checked
    """
    normalized = []
    for domain in domains:
        domain = domain.rstrip(".\r\n").strip().split(",")[0]
        if domain == "":
            continue
        try:
            domain = validate_domain(domain)
        except InvalidDomainInput as error:
            logging.warning(str(error))
            continue
        if domain not in normalized:
            normalized.append(domain)
    results = []
    for domain in sorted(normalized):
        results.append(check_domain(domain, **kwargs))
        if wait > 0.0:
            logging.debug(f"Sleeping for {wait} seconds")
            sleep(wait)
    if len(results) == 1:
        results = results[0]

    return results


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
    Converts a report or list of reports to a list of CSV row dictionaries

    Args:
        results (dict): A :class:`SecurityReport` or a list of them

    Returns:
        list: A list of CSV row dictionaries
    """
    rows = []

    if type(results) is dict:
        results = [results]

    for result in results:
        row = {
            "domain": result["domain"],
            "grade": result["grade"],
            "percentage": result["percentage"],
            "total_score": result["totalScore"],
            "max_possible_score": result["maxPossibleScore"],
        }
        for protocol in PROTOCOLS:
            score = result["scores"][protocol]
            row[f"{protocol}_score"] = score["totalScore"]
            row[f"{protocol}_grade"] = score["grade"]
            failed = [item["name"] for item in score["scoreItems"] if not item["passed"]]
            row[f"{protocol}_failed"] = "|".join(failed)
        if "details" in result:
            details = result["details"]
            row["spf_records"] = "|".join(
                r["spfRecord"] for r in details["spf"]["spfRecords"]
            )
            row["dkim_selectors"] = "|".join(
                r["selector"] for r in details["dkim"]["records"]
            )
            row["dmarc_record"] = details["dmarc"]["record"]["rawRecord"]
            for protocol in PROTOCOLS:
                row[f"{protocol}_warnings"] = "|".join(details[protocol]["warnings"])
        row["request_id"] = result["requestId"]
        row["timestamp"] = result["timestamp"]
        rows.append(row)
    return rows


def results_to_csv(results: Union[dict, list[dict]]) -> str:
    """
    Converts a report or list of reports to CSV

    Args:
        results (dict): A :class:`SecurityReport` or a list of them

    Returns:
        str: A CSV of results
    """
    fields = [
        "domain",
        "grade",
        "percentage",
        "total_score",
        "max_possible_score",
        "spf_score",
        "spf_grade",
        "spf_failed",
        "dkim_score",
        "dkim_grade",
        "dkim_failed",
        "dmarc_score",
        "dmarc_grade",
        "dmarc_failed",
        "spf_records",
        "dkim_selectors",
        "dmarc_record",
        "spf_warnings",
        "dkim_warnings",
        "dmarc_warnings",
        "request_id",
        "timestamp",
    ]
    output = StringIO(newline="\n")
    writer = DictWriter(output, fieldnames=fields)
    writer.writeheader()
    rows = results_to_csv_rows(results)
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
