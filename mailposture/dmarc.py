# -*- coding: utf-8 -*-
"""DMARC record validation and scoring"""

from __future__ import annotations

import logging
import math
import re
from typing import Optional, TypedDict, Union
from collections.abc import Sequence

import dns.resolver
from dns.nameserver import Nameserver
import pyleri

from mailposture._constants import (
    DNS_TIMEOUT,
    DNS_TIMEOUT_RETRIES,
    SYNTAX_ERROR_MARKER,
)
from mailposture.scoring import (
    DMARC_RUBRIC,
    ProtocolScore,
    Rubric,
    failed_score,
    make_score_item,
    summarize_score_items,
)
from mailposture.utils import (
    WSP_REGEX,
    DNSException,
    DNSExceptionNoAnswer,
    DNSExceptionNXDOMAIN,
    DNSTimeout,
    TagListSyntaxError,
    get_base_domain,
    get_txt_records,
    normalize_domain,
    parse_mailto_uri,
    parse_tag_list,
    utc_timestamp,
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

DMARC_VERSION_REGEX_STRING = rf"v{WSP_REGEX}*={WSP_REGEX}*DMARC1{WSP_REGEX}*;"
DMARC_TAG_VALUE_REGEX_STRING = (
    rf"([a-z]{{1,5}}){WSP_REGEX}*={WSP_REGEX}*([\w.:@/+!,_\- ]*)"
)

DMARC_POLICIES = ("none", "quarantine", "reject")

dmarc_tags = {
    "v": {"name": "Version", "required": True},
    "p": {"name": "Requested Mail Receiver Policy", "required": True},
    "sp": {"name": "Subdomain Policy", "required": False},
    "pct": {"name": "Percentage", "required": False, "default": 100},
    "rua": {"name": "Aggregate Feedback Addresses", "required": False},
    "ruf": {"name": "Forensic Feedback Addresses", "required": False},
    "fo": {
        "name": "Failure Reporting Options",
        "required": False,
        "default": "0",
        "values": ("0", "1", "d", "s"),
    },
    "adkim": {
        "name": "DKIM Alignment Mode",
        "required": False,
        "default": "r",
        "values": ("r", "s"),
    },
    "aspf": {
        "name": "SPF Alignment Mode",
        "required": False,
        "default": "r",
        "values": ("r", "s"),
    },
    "rf": {
        "name": "Report Format",
        "required": False,
        "default": "afrf",
        "values": ("afrf", "iodef"),
    },
    "ri": {"name": "Report Interval", "required": False, "default": 86400},
}

# Points for the p and sp tags; scores are capped by the rubric
POLICY_POINTS = {"reject": 35, "quarantine": 20, "none": 0}
SUBDOMAIN_POLICY_POINTS = {"reject": 10, "quarantine": 5, "none": 0}


class DMARCError(Exception):
    """Raised when a fatal DMARC error occurs"""


class DMARCRecordNotFound(DMARCError):
    """Raised when a DMARC record could not be found"""


class DMARCSyntaxError(DMARCError):
    """Raised when a DMARC syntax error is found"""


class MultipleDMARCRecords(DMARCError):
    """Raised when multiple DMARC records are found, in violation of
    RFC 7489, § 6.6.3"""


class _DMARCGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for DMARC records"""

    version_tag = pyleri.Regex(DMARC_VERSION_REGEX_STRING, re.IGNORECASE)
    tag_value = pyleri.Regex(DMARC_TAG_VALUE_REGEX_STRING, re.IGNORECASE)
    START = pyleri.Sequence(
        version_tag,
        pyleri.List(
            tag_value, delimiter=pyleri.Regex(f"{WSP_REGEX}*;{WSP_REGEX}*"), opt=True
        ),
    )


class DMARCRecordQueryResults(TypedDict):
    record: str
    records: list[str]
    location: str
    warnings: list[str]


class DmarcParsedData(TypedDict):
    version: str
    policy: str
    subdomainPolicy: str
    percentage: int
    reportEmails: list[str]
    forensicEmails: list[str]
    failureOptions: list[str]


class ParsedDMARCRecord(TypedDict):
    parsedData: DmarcParsedData
    tags: dict[str, Union[str, int]]
    warnings: list[str]


class DmarcRecord(TypedDict):
    domain: str
    rawRecord: str
    parsedData: DmarcParsedData
    retrievedAt: str


class DMARCCheckResults(TypedDict):
    domain: str
    location: Optional[str]
    record: DmarcRecord
    score: ProtocolScore
    warnings: list[str]


def _query_dmarc_records(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
) -> tuple[list[str], list[str]]:
    """Returns the DMARC records at ``_dmarc.<domain>`` and any warnings"""
    target = f"_dmarc.{domain}"
    records = []
    warnings = []
    try:
        answers = get_txt_records(
            target,
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except (DNSExceptionNXDOMAIN, DNSExceptionNoAnswer):
        return records, warnings
    for record in answers:
        if record.lower().startswith("v=dmarc1"):
            records.append(record)
        elif record.strip().lower().startswith("v=dmarc1"):
            warnings.append(
                f"Found a DMARC record at {target} that starts with whitespace. "
                "Please remove the whitespace, as some implementations "
                "may not process it correctly."
            )
            records.append(record.strip())
        elif record.lower().startswith("v=spf1"):
            warnings.append(
                f"Found a SPF record at {target} where a DMARC record should be."
            )
        else:
            warnings.append(f"An unrelated TXT record was found at {target}: {record}")
    return records, warnings


def query_dmarc_record(
    domain: str,
    *,
    allow_multiple: bool = False,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
) -> DMARCRecordQueryResults:
    """
    Queries DNS for a DMARC record, falling back to the organizational
    domain when a subdomain has none

    Args:
        domain (str): A domain name
        allow_multiple (bool): Return every record instead of raising when
                               more than one is published
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for a record from DNS
        timeout_retries (int): The number of times to reattempt a query
                               after a transient failure

    Returns:
        dict: a ``dict`` with the following keys:
                     - ``record`` - the first unparsed DMARC record string
                     - ``records`` - every DMARC record string found
                     - ``location`` - the domain where the record was found
                     - ``warnings`` - warning conditions found

    Raises:
        :exc:`mailposture.dmarc.DMARCRecordNotFound`
        :exc:`mailposture.dmarc.MultipleDMARCRecords`
        :exc:`mailposture.utils.DNSTimeout`
        :exc:`mailposture.utils.DNSException`
    """
    domain = normalize_domain(domain)
    logging.debug(f"Checking for a DMARC record on {domain}")
    query_kwargs = dict(
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    base_domain = get_base_domain(domain)
    location = domain
    records, warnings = _query_dmarc_records(domain, **query_kwargs)
    if len(records) == 0 and domain != base_domain:
        logging.debug(f"Checking for a DMARC record on {base_domain}")
        records, base_warnings = _query_dmarc_records(base_domain, **query_kwargs)
        warnings += base_warnings
        location = base_domain
    if len(records) == 0:
        error_str = "A DMARC record does not exist"
        if domain == base_domain:
            error_str += "."
        else:
            error_str += " for this subdomain or its base domain."
        raise DMARCRecordNotFound(error_str)
    if len(records) > 1:
        message = (
            "Multiple DMARC policy records are not permitted - "
            "https://tools.ietf.org/html/rfc7489#section-6.6.3"
        )
        if not allow_multiple:
            raise MultipleDMARCRecords(message)
        warnings.append(message)

    return {
        "record": records[0],
        "records": records,
        "location": location,
        "warnings": warnings,
    }


def _parse_report_uris(tag: str, value: str, warnings: list[str]) -> list[str]:
    addresses = []
    for uri in value.split(","):
        if uri.strip() == "":
            continue
        address = parse_mailto_uri(uri)
        if address is None:
            warnings.append(f"{uri.strip()} is not a valid {tag} mailto URI.")
            continue
        addresses.append(address)
    return addresses


def parse_dmarc_record(
    record: str,
    domain: str,
    *,
    syntax_error_marker: str = SYNTAX_ERROR_MARKER,
) -> ParsedDMARCRecord:
    """
    Parses a DMARC record

    Args:
        record (str): A DMARC record
        domain (str): The domain where the record is found
        syntax_error_marker (str): The maker for pointing out syntax errors

    Returns:
        dict: a ``dict`` with the following keys:
         - ``parsedData`` - The policy, coverage and reporting addresses
         - ``tags`` - Every tag value, explicit or default
         - ``warnings`` - A ``list`` of warnings

    Raises:
        :exc:`mailposture.dmarc.DMARCSyntaxError`
    """
    logging.debug(f"Parsing the DMARC record for {domain}")
    warnings = []
    record = record.strip().strip('"')
    if record.lower().startswith("v=spf1"):
        raise DMARCSyntaxError(
            "Found a SPF record where a DMARC record should be; most likely, "
            "the _dmarc subdomain record does not actually exist, and the "
            "request for TXT records was redirected to the base domain."
        )
    parsed_record = _DMARCGrammar().parse(record)
    if not parsed_record.is_valid:
        expecting = list(
            map(lambda x: str(x).strip('"'), list(parsed_record.expecting))
        )
        marked_record = (
            record[: parsed_record.pos]
            + syntax_error_marker
            + record[parsed_record.pos :]
        )
        expecting = " or ".join(expecting)
        raise DMARCSyntaxError(
            f"Error: Expected {expecting} at position "
            f"{parsed_record.pos} "
            f"(marked with {syntax_error_marker}) in: "
            f"{marked_record}"
        )
    try:
        pairs = parse_tag_list(record, syntax_error_marker=syntax_error_marker)
    except TagListSyntaxError as error:
        raise DMARCSyntaxError(str(error))

    tags = {}
    for tag, value in pairs:
        if tag not in dmarc_tags:
            warnings.append(f"{tag} is not a valid DMARC tag.")
            continue
        tags[tag] = value
    if "p" not in tags:
        raise DMARCSyntaxError('The record is missing the required policy ("p") tag.')
    if len(pairs) < 2 or pairs[1][0] != "p":
        raise DMARCSyntaxError("The p tag must immediately follow the v tag.")

    for tag in ("p", "sp"):
        if tag in tags:
            tags[tag] = tags[tag].lower()
            if tags[tag] not in DMARC_POLICIES:
                raise DMARCSyntaxError(
                    f"Tag {tag} must have one of the following values: "
                    f"{','.join(DMARC_POLICIES)} - not {tags[tag]}"
                )
    if tags["p"] == "none":
        warnings.append(
            f"A p tag value of none makes DMARC unenforced on email sent as {domain}."
        )
    if tags.get("sp") == "none":
        warnings.append(
            "An sp tag value of none makes DMARC unenforced on email sent as "
            f"a subdomain of {domain}."
        )

    try:
        percentage = int(tags.get("pct", dmarc_tags["pct"]["default"]))
    except ValueError:
        raise DMARCSyntaxError("The value of the pct tag must be an integer.")
    if percentage < 0 or percentage > 100:
        raise DMARCSyntaxError("The value of the pct tag must be between 0 and 100.")

    failure_options = []
    for option in tags.get("fo", dmarc_tags["fo"]["default"]).lower().split(":"):
        option = option.strip()
        if option not in dmarc_tags["fo"]["values"]:
            warnings.append(f"{option} is not a valid option for the DMARC fo tag.")
            continue
        failure_options.append(option)
    if len(failure_options) == 0:
        failure_options = [dmarc_tags["fo"]["default"]]
    elif "0" in failure_options and "1" in failure_options:
        warnings.append(
            "When 1 is present in the fo tag, including in the fo tag 0 is redundant."
        )

    for tag in ("adkim", "aspf"):
        if tag in tags:
            tags[tag] = tags[tag].lower()
            if tags[tag] not in dmarc_tags[tag]["values"]:
                warnings.append(f"Tag {tag} must be r or s - not {tags[tag]}")
    if "rf" in tags:
        for value in tags["rf"].lower().split(":"):
            if value.strip() not in dmarc_tags["rf"]["values"]:
                warnings.append(f"{value} is not a valid option for the DMARC rf tag.")
    if "ri" in tags:
        try:
            tags["ri"] = int(tags["ri"])
        except ValueError:
            warnings.append("The value of the ri tag must be an integer.")

    report_emails = _parse_report_uris("rua", tags.get("rua", ""), warnings)
    if "rua" not in tags:
        warnings.append("rua tag (destination for aggregate reports) not found.")
    elif len(report_emails) > 2:
        warnings.append("Some DMARC reporters might not send to more than two rua URIs.")
    forensic_emails = _parse_report_uris("ruf", tags.get("ruf", ""), warnings)

    for tag, details in dmarc_tags.items():
        if tag not in tags and "default" in details:
            tags[tag] = details["default"]
    tags["v"] = tags["v"].upper()
    tags["pct"] = percentage

    parsed_data: DmarcParsedData = {
        "version": tags["v"],
        "policy": tags["p"],
        "subdomainPolicy": tags.get("sp", tags["p"]),
        "percentage": percentage,
        "reportEmails": report_emails,
        "forensicEmails": forensic_emails,
        "failureOptions": failure_options,
    }
    return {"parsedData": parsed_data, "tags": tags, "warnings": warnings}


def empty_dmarc_parsed_data() -> DmarcParsedData:
    return {
        "version": "",
        "policy": "",
        "subdomainPolicy": "",
        "percentage": 0,
        "reportEmails": [],
        "forensicEmails": [],
        "failureOptions": [],
    }


def score_dmarc(
    parsed_data: DmarcParsedData,
    *,
    record_count: int = 1,
    rubric: Optional[Rubric] = None,
) -> ProtocolScore:
    """
    Scores a parsed DMARC record

    Args:
        parsed_data (dict): The ``parsedData`` of a DMARC record
        record_count (int): The number of DMARC records published
        rubric (dict): Replaces :data:`mailposture.scoring.DMARC_RUBRIC`

    Returns:
        dict: The DMARC protocol score
    """
    if rubric is None:
        rubric = DMARC_RUBRIC
    policy = parsed_data["policy"]
    subdomain_policy = parsed_data["subdomainPolicy"]
    percentage = parsed_data["percentage"]
    score_items = []
    for check, rubric_item in rubric.items():
        max_score = rubric_item["max_score"]
        if check == "recordPresent":
            item = make_score_item(
                rubric_item, max_score, True, "A DMARC record is published"
            )
        elif check == "singleRecord":
            passed = record_count == 1
            details = (
                "Exactly one DMARC record is published"
                if passed
                else f"{record_count} DMARC records are published (RFC 7489 § 6.6.3)"
            )
            item = make_score_item(rubric_item, max_score if passed else 0, passed, details)
        elif check == "policy":
            item = make_score_item(
                rubric_item,
                POLICY_POINTS.get(policy, 0),
                policy in ("quarantine", "reject"),
                f"p={policy}",
            )
        elif check == "subdomainPolicy":
            item = make_score_item(
                rubric_item,
                SUBDOMAIN_POLICY_POINTS.get(subdomain_policy, 0),
                subdomain_policy in ("quarantine", "reject"),
                f"sp={subdomain_policy}",
            )
        elif check == "coverage":
            item = make_score_item(
                rubric_item,
                math.floor(max_score * percentage / 100),
                percentage == 100,
                f"pct={percentage}",
            )
        elif check == "aggregateReporting":
            passed = len(parsed_data["reportEmails"]) > 0
            details = (
                f"rua={','.join(parsed_data['reportEmails'])}"
                if passed
                else "No aggregate report address (rua) is set"
            )
            item = make_score_item(rubric_item, max_score if passed else 0, passed, details)
        elif check == "forensicReporting":
            passed = len(parsed_data["forensicEmails"]) > 0
            details = (
                f"ruf={','.join(parsed_data['forensicEmails'])}"
                if passed
                else "No forensic report address (ruf) is set; this is optional"
            )
            item = make_score_item(rubric_item, max_score if passed else 0, passed, details)
        else:
            continue
        score_items.append(item)

    return summarize_score_items(score_items)


def dmarc_failure_results(
    domain: str,
    message: str,
    *,
    raw_record: str = "",
    rubric: Optional[Rubric] = None,
) -> DMARCCheckResults:
    """
    Builds DMARC results for a domain that could not be evaluated

    Args:
        domain (str): A domain name
        message (str): Why the domain could not be evaluated
        raw_record (str): The unusable record, if one was found
        rubric (dict): Replaces :data:`mailposture.scoring.DMARC_RUBRIC`

    Returns:
        dict: DMARC results with every item failed
    """
    if rubric is None:
        rubric = DMARC_RUBRIC
    return {
        "domain": domain,
        "location": None,
        "record": {
            "domain": domain,
            "rawRecord": raw_record,
            "parsedData": empty_dmarc_parsed_data(),
            "retrievedAt": utc_timestamp(),
        },
        "score": failed_score(rubric, message),
        "warnings": [],
    }


def check_dmarc(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    rubric: Optional[Rubric] = None,
) -> DMARCCheckResults:
    """
    Retrieves, parses and scores the DMARC record of a domain

    When more than one record is published, the first syntactically valid
    one is scored. DNS and DMARC errors are reported as failed items
    instead of being raised.

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query
                               after a transient failure
        rubric (dict): Replaces :data:`mailposture.scoring.DMARC_RUBRIC`

    Returns:
        dict: A ``dict`` with the following keys:
            - ``domain`` - The queried domain
            - ``location`` - The domain where the record was found
            - ``record`` - The DMARC record
            - ``score`` - The DMARC protocol score
            - ``warnings`` - A ``list`` of warnings
    """
    domain = normalize_domain(domain)
    try:
        query = query_dmarc_record(
            domain,
            allow_multiple=True,
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except DMARCRecordNotFound as error:
        return dmarc_failure_results(domain, str(error), rubric=rubric)
    except DNSTimeout as error:
        logging.warning(f"DMARC lookup for {domain} timed out: {error}")
        return dmarc_failure_results(domain, f"DNS timeout: {error}", rubric=rubric)
    except DNSException as error:
        return dmarc_failure_results(domain, f"DNS error: {error}", rubric=rubric)

    parsed = None
    raw_record = query["record"]
    syntax_errors = []
    for record in query["records"]:
        try:
            parsed = parse_dmarc_record(record, query["location"])
        except DMARCSyntaxError as error:
            syntax_errors.append(str(error))
            continue
        raw_record = record
        break
    if parsed is None:
        return dmarc_failure_results(
            domain, "; ".join(syntax_errors), raw_record=raw_record, rubric=rubric
        )

    return {
        "domain": domain,
        "location": query["location"],
        "record": {
            "domain": domain,
            "rawRecord": raw_record,
            "parsedData": parsed["parsedData"],
            "retrievedAt": utc_timestamp(),
        },
        "score": score_dmarc(
            parsed["parsedData"], record_count=len(query["records"]), rubric=rubric
        ),
        "warnings": query["warnings"] + syntax_errors + parsed["warnings"],
    }
