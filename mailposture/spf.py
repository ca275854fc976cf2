# -*- coding: utf-8 -*-
"""Sender Policy framework (SPF) record resolution, validation and scoring"""

from __future__ import annotations

import ipaddress
import logging
import re
from typing import Optional, TypedDict, Union
from collections.abc import Sequence

import dns.resolver
from dns.nameserver import Nameserver
import pyleri

from mailposture._constants import (
    DNS_TIMEOUT,
    DNS_TIMEOUT_RETRIES,
    SPF_LOOKUP_LIMIT,
    SYNTAX_ERROR_MARKER,
)
from mailposture.scoring import (
    SPF_RUBRIC,
    ProtocolScore,
    Rubric,
    make_score_item,
    summarize_score_items,
)
from mailposture.utils import (
    DNSException,
    DNSExceptionNoAnswer,
    DNSExceptionNXDOMAIN,
    DNSTimeout,
    get_txt_records,
    normalize_domain,
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

SPF_VERSION_TAG = "v=spf1"
SPF_VERSION_TAG_REGEX_STRING = r"v=spf1"

SPF_MECHANISM_REGEX_STRING = (
    r"([+\-~?])?"
    r"(mx:?|ip4:?|ip6:?|exists:?|include:?|all|a:?|redirect=|exp=|ptr:?)"
    r"([\w+/_.:\-{}%]*)"
)
SPF_MODIFIER_REGEX_STRING = r"[a-z][a-z0-9_\-.]*=[^\s]*"
AFTER_ALL_REGEX_STRING = r"(?:^|\s)[+\-~?]?all\s+(.+)"

# A single whitespace-delimited term, split into qualifier, name and the
# remainder (``:value`` or ``/cidr``)
SPF_TERM_REGEX = re.compile(
    r"^([+\-~?]?)(all|include|a|mx|ptr|ip4|ip6|exists)([:/].*)?$", re.IGNORECASE
)
SPF_MODIFIER_REGEX = re.compile(r"^([a-z][a-z0-9_\-.]*)=(.*)$", re.IGNORECASE)
AFTER_ALL_REGEX = re.compile(AFTER_ALL_REGEX_STRING, re.IGNORECASE)

# An all mechanism glued to the previous term, e.g. "ip4:203.0.113.7~all"
CONCATENATED_ALL_REGEX = re.compile(r"\S([+\-~?])all(?=\s|$)", re.IGNORECASE)

MACRO_LETTERS = set("slodiphcrtv")
MACRO_DELIMS = set(".-+,/_=")

# RFC 7208 § 4.6.4
DNS_LOOKUP_MECHANISMS = ("a", "mx", "ptr", "exists", "include")
DEPRECATED_MECHANISMS = ("ptr",)
NEUTRAL_ALL_QUALIFIER = "?"


class SPFError(Exception):
    """Raised when a fatal SPF error occurs"""

    def __init__(self, msg: str, data: Optional[dict] = None):
        """
        Args:
            msg (str): The error message
            data (dict): A dictionary of data to include in the output
        """
        self.data = data
        Exception.__init__(self, msg)


class SPFRecordNotFound(SPFError):
    """Raised when an SPF record could not be found"""

    def __init__(self, error: Union[Exception, str], domain: str):
        self.error = error
        self.domain = domain
        SPFError.__init__(self, str(error))

    def __str__(self):
        return str(self.error)


class MultipleSPFTXTRecords(SPFError):
    """Raised when multiple TXT spf1 records are found"""


class SPFSyntaxError(SPFError):
    """Raised when an SPF syntax error is found"""


class SPFTooManyDNSLookups(SPFError):
    """Raised when resolving an SPF chain requires too many lookups (10 max)"""

    def __init__(self, *args, **kwargs):
        data = {"dns_lookups": kwargs["dns_lookups"]}
        SPFError.__init__(self, args[0], data=data)


class SPFLookupLoop(SPFError):
    """Raised when an SPF chain refers back to one of its own records"""


class SPFRedirectLoop(SPFLookupLoop):
    """Raised when an SPF redirect loop is detected"""


class SPFIncludeLoop(SPFLookupLoop):
    """Raised when an SPF include loop is detected"""


class _SPFGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for SPF records"""

    version_tag = pyleri.Regex(SPF_VERSION_TAG_REGEX_STRING, re.IGNORECASE)
    mechanism = pyleri.Regex(SPF_MECHANISM_REGEX_STRING, re.IGNORECASE)
    modifier = pyleri.Regex(SPF_MODIFIER_REGEX_STRING, re.IGNORECASE)
    START = pyleri.Sequence(
        version_tag, pyleri.Repeat(pyleri.Choice(mechanism, modifier))
    )


class SPFQueryResults(TypedDict):
    record: str
    records: list[str]
    warnings: list[str]


class SPFTerm(TypedDict):
    qualifier: str
    name: str
    value: str
    modifier: bool


class ParsedSPFRecord(TypedDict):
    terms: list[SPFTerm]
    all: Optional[str]
    redirect: Optional[str]
    errors: list[str]
    warnings: list[str]


class SpfRecord(TypedDict):
    domain: str
    spfRecord: str
    type: str


class SPFChainResults(TypedDict):
    domain: str
    records: list[SpfRecord]
    lookups: int
    dnsLookups: int
    initialRecordCount: int
    error: Optional[SPFError]
    warnings: list[str]


class ValidationResult(TypedDict):
    isValid: bool
    errors: list[str]


class FirstAllQualifier(TypedDict):
    qualifier: str


class SPFValidationResults(TypedDict):
    hasSpfRecord: ValidationResult
    syntaxValidation: ValidationResult
    oneInitialSpfRecord: ValidationResult
    maxTenSpfRecords: ValidationResult
    deprecatedMechanisms: ValidationResult
    unsafeAllMechanism: ValidationResult
    firstAllQualifier: FirstAllQualifier


class SPFCheckResults(TypedDict):
    domain: str
    spfRecords: list[SpfRecord]
    validationResults: SPFValidationResults
    scoringResults: ProtocolScore
    warnings: list[str]


def _check_spf_macros(value: str) -> Optional[int]:
    """
    Checks the macro syntax of a domain-spec per RFC 7208 § 7

    Returns:
        int: The position of the first invalid macro, or ``None``
    """
    i = 0
    while i < len(value):
        if value[i] != "%":
            i += 1
            continue
        if i + 1 >= len(value):
            return i
        if value[i + 1] in ("%", "_", "-"):
            i += 2
            continue
        close = value.find("}", i + 2)
        if value[i + 1] != "{" or close == -1 or close == i + 2:
            return i
        body = value[i + 2 : close]
        if body[0] not in MACRO_LETTERS:
            return i + 2
        digits = re.match(r"\d*", body[1:]).group(0)
        if digits and int(digits) == 0:
            return i + 3
        rest = body[1 + len(digits) :]
        if rest.startswith("r"):
            rest = rest[1:]
        for offset, char in enumerate(rest):
            if char not in MACRO_DELIMS:
                return close - len(rest) + offset
        i = close + 1
    return None


def _check_term_value(
    term: SPFTerm, domain: str, syntax_error_marker: str
) -> Optional[str]:
    """Returns an error message if the value of a term is invalid"""
    name = term["name"]
    value = term["value"]
    if name == "all":
        if value:
            return f"{domain}: The all mechanism does not take a value"
        return None
    if name in ("ip4", "ip6"):
        if "%" in value:
            return f"{domain}: SPF macros are not allowed in {name} mechanisms: {value}"
        try:
            network = ipaddress.ip_network(value, strict=False)
        except ValueError:
            return f"{domain}: {value} is not a valid {name} value"
        expected = ipaddress.IPv4Network if name == "ip4" else ipaddress.IPv6Network
        if not isinstance(network, expected):
            return f"{domain}: {value} is not a valid {name} value"
        return None
    if name in ("include", "exists", "redirect", "exp") and value == "":
        return f"{domain}: {name} must have a value"
    pos = _check_spf_macros(value)
    if pos is not None:
        marked_value = value[:pos] + syntax_error_marker + value[pos:]
        return (
            f"{domain}: Invalid SPF macro syntax at position {pos} "
            f"(marked with {syntax_error_marker}) in value: {marked_value}"
        )
    return None


def query_spf_record(
    domain: str,
    *,
    allow_multiple: bool = False,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
) -> SPFQueryResults:
    """
    Queries DNS for an SPF record

    Args:
        domain (str): A domain name
        allow_multiple (bool): Return the first record instead of raising
                               when the domain publishes more than one
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query
                               after a transient failure

    Returns:
        dict: A ``dict`` with the following keys:
            - ``record`` - The first SPF record string
            - ``records`` - Every SPF record string published
            - ``warnings`` - A ``list`` of warnings

    Raises:
        :exc:`mailposture.spf.SPFRecordNotFound`
        :exc:`mailposture.spf.MultipleSPFTXTRecords`
        :exc:`mailposture.utils.DNSTimeout`
        :exc:`mailposture.utils.DNSException`
    """
    domain = normalize_domain(domain)
    logging.debug(f"Checking for a SPF record on {domain}")
    warnings = []
    spf_records = []
    try:
        answers = get_txt_records(
            domain,
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except DNSExceptionNXDOMAIN:
        raise SPFRecordNotFound(f"The domain {domain} does not exist.", domain)
    except DNSExceptionNoAnswer:
        raise SPFRecordNotFound(f"An SPF record does not exist on {domain}.", domain)

    for record in answers:
        if record == "Undecodable characters":
            warnings.append(f"A TXT record on {domain} contains undecodable characters.")
            continue
        # RFC 7208 § 4.5: the version section is terminated by either a
        # space or the end of the record
        lowered = record.lower()
        if lowered == SPF_VERSION_TAG or lowered.startswith(f"{SPF_VERSION_TAG} "):
            spf_records.append(record)
        elif lowered.startswith(SPF_VERSION_TAG):
            warnings.append(
                f"{domain}: According to RFC 7208 section 4.5, an SPF record "
                f"should be equal to {SPF_VERSION_TAG} or begin with "
                f"{SPF_VERSION_TAG} followed by a space: {record}"
            )

    if len(spf_records) == 0:
        raise SPFRecordNotFound(f"An SPF record does not exist on {domain}.", domain)
    if len(spf_records) > 1:
        if not allow_multiple:
            raise MultipleSPFTXTRecords(
                f"The domain {domain} has multiple SPF TXT records"
            )
        warnings.append(
            f"The domain {domain} has {len(spf_records)} SPF TXT records; "
            "only the first is evaluated"
        )

    return {"record": spf_records[0], "records": spf_records, "warnings": warnings}


def parse_spf_record(
    record: str,
    domain: str,
    *,
    syntax_error_marker: str = SYNTAX_ERROR_MARKER,
) -> ParsedSPFRecord:
    """
    Splits an SPF record into its terms without performing any DNS lookups

    Parsing is tolerant: syntax problems are collected in ``errors`` rather
    than raised, so that the rest of the record can still be evaluated.

    Args:
        record (str): An SPF record
        domain (str): The domain that the SPF record came from
        syntax_error_marker (str): The maker for pointing out syntax errors

    Returns:
        dict: A ``dict`` with the following keys:
            - ``terms`` - The mechanisms and modifiers, in order
            - ``all`` - The qualifier of the ``all`` mechanism, or ``None``
            - ``redirect`` - The effective ``redirect`` target, or ``None``
            - ``errors`` - A ``list`` of syntax errors
            - ``warnings`` - A ``list`` of warnings
    """
    logging.debug(f"Parsing the SPF record on {domain}")
    record = re.sub(r'"\s+"', " ", record).replace('"', "").strip()
    parsed: ParsedSPFRecord = {
        "terms": [],
        "all": None,
        "redirect": None,
        "errors": [],
        "warnings": [],
    }
    errors = parsed["errors"]
    warnings = parsed["warnings"]

    glued_all = CONCATENATED_ALL_REGEX.search(record)
    if glued_all:
        pos = glued_all.start(1)
        marked_record = record[:pos] + syntax_error_marker + record[pos:]
        errors.append(
            f"{domain}: Expected whitespace before 'all' at position {pos} "
            f"(marked with {syntax_error_marker}) in: {marked_record}"
        )

    # Anything after the all mechanism is checked term by term below
    grammar_record = record
    after_all = AFTER_ALL_REGEX.search(record)
    if after_all:
        grammar_record = record[: after_all.start(1)].rstrip()
    parsed_grammar = _SPFGrammar().parse(grammar_record)
    grammar_valid = parsed_grammar.is_valid
    if not grammar_valid:
        pos = parsed_grammar.pos
        expecting = list(map(lambda x: str(x).strip('"'), list(parsed_grammar.expecting)))
        expecting_str = " or ".join(expecting) or "a mechanism"
        marked_record = record[:pos] + syntax_error_marker + record[pos:]
        errors.append(
            f"{domain}: Expected {expecting_str} at position {pos} "
            f"(marked with {syntax_error_marker}) in: {marked_record}"
        )

    tokens = record.split()
    if len(tokens) == 0 or tokens[0].lower() != SPF_VERSION_TAG:
        if grammar_valid:
            errors.append(f"{domain}: The record does not begin with {SPF_VERSION_TAG}")
        return parsed

    redirect_seen = False
    exp_seen = False
    for token in tokens[1:]:
        mechanism = SPF_TERM_REGEX.match(token)
        modifier = SPF_MODIFIER_REGEX.match(token)
        if mechanism:
            remainder = mechanism.group(3) or ""
            term: SPFTerm = {
                "qualifier": mechanism.group(1),
                "name": mechanism.group(2).lower(),
                "value": remainder[1:] if remainder.startswith(":") else remainder,
                "modifier": False,
            }
            if parsed["all"] is not None:
                warnings.append(
                    f"{domain}: The {token} mechanism after the all mechanism "
                    "is ignored"
                )
        elif modifier:
            term = {
                "qualifier": "",
                "name": modifier.group(1).lower(),
                "value": modifier.group(2),
                "modifier": True,
            }
        else:
            if grammar_valid:
                errors.append(f"{domain}: Unrecognized SPF term: {token}")
            continue

        error = _check_term_value(term, domain, syntax_error_marker)
        if error:
            errors.append(error)
        parsed["terms"].append(term)

        if term["name"] == "all" and not term["modifier"]:
            if parsed["all"] is not None:
                errors.append(f"{domain}: The all mechanism can only be used once")
            else:
                parsed["all"] = term["qualifier"] or "+"
        elif term["name"] == "redirect" and term["modifier"]:
            if redirect_seen:
                warnings.append(
                    f"{domain}: Multiple redirect modifiers; only the first is used"
                )
                continue
            redirect_seen = True
            if term["value"]:
                parsed["redirect"] = normalize_domain(term["value"])
        elif term["name"] == "exp" and term["modifier"]:
            if exp_seen:
                errors.append(f"{domain}: Multiple exp values are not permitted")
            exp_seen = True
        elif term["modifier"]:
            warnings.append(f"{domain}: Unknown modifier {term['name']} is ignored")

    if parsed["redirect"] and parsed["all"] is not None:
        # RFC 7208 § 6.1
        warnings.append(
            f"{domain}: The redirect modifier is ignored because the record "
            "contains an all mechanism"
        )
        parsed["redirect"] = None

    return parsed


def validate_spf_syntax(
    record: str, domain: str, *, syntax_error_marker: str = SYNTAX_ERROR_MARKER
) -> ParsedSPFRecord:
    """
    Parses an SPF record and raises on the first syntax error

    Args:
        record (str): An SPF record
        domain (str): The domain that the SPF record came from
        syntax_error_marker (str): The maker for pointing out syntax errors

    Returns:
        dict: The parsed record

    Raises:
        :exc:`mailposture.spf.SPFSyntaxError`
    """
    parsed = parse_spf_record(record, domain, syntax_error_marker=syntax_error_marker)
    if len(parsed["errors"]) > 0:
        raise SPFSyntaxError(parsed["errors"][0])
    return parsed


def _lookup_targets(parsed: ParsedSPFRecord, domain: str) -> tuple[list, list, int]:
    """
    Lists the records a parsed SPF record refers to

    Returns:
        tuple: ``(kind, target)`` pairs in mechanism order, warnings, and the
        number of DNS lookups the record's terms require
    """
    targets = []
    warnings = []
    dns_lookups = 0
    for term in parsed["terms"]:
        name = term["name"]
        value = term["value"]
        if term["modifier"]:
            if name != "redirect" or parsed["redirect"] is None:
                continue
            dns_lookups += 1
            if "%" in value:
                warnings.append(
                    f"{domain}: redirect={value} uses macros and is not resolved"
                )
            else:
                targets.append(("redirect", parsed["redirect"]))
            # A redirect replaces the rest of the record
            break
        if name not in DNS_LOOKUP_MECHANISMS:
            continue
        dns_lookups += 1
        if name == "include" and value:
            if "%" in value:
                warnings.append(
                    f"{domain}: include:{value} uses macros and is not resolved"
                )
            else:
                targets.append(("include", normalize_domain(value)))
    return targets, warnings, dns_lookups


def resolve_spf_chain(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    lookup_limit: int = SPF_LOOKUP_LIMIT,
) -> SPFChainResults:
    """
    Follows the ``include`` mechanisms and ``redirect`` modifiers of a
    domain's SPF record, depth-first in the order they appear

    Every SPF record fetch, the domain's own included, counts against
    ``lookup_limit``. When the limit would be exceeded, or when an
    ``include`` or ``redirect`` names a domain that was already visited, the
    walk stops and the partial chain is returned with ``error`` set.

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query
                               after a transient failure
        lookup_limit (int): The maximum number of SPF records to fetch

    Returns:
        dict: A ``dict`` with the following keys:
            - ``domain`` - The queried domain
            - ``records`` - The visited records, in visitation order
            - ``lookups`` - The number of SPF record fetches
            - ``dnsLookups`` - The RFC 7208 § 4.6.4 lookup tally
            - ``initialRecordCount`` - SPF records published by the domain
            - ``error`` - The :exc:`SPFError` that stopped the walk, or ``None``
            - ``warnings`` - A ``list`` of warnings

    Raises:
        :exc:`mailposture.spf.SPFRecordNotFound`
        :exc:`mailposture.utils.DNSTimeout`
        :exc:`mailposture.utils.DNSException`
    """
    domain = normalize_domain(domain)
    query_kwargs = dict(
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    root_query = query_spf_record(domain, allow_multiple=True, **query_kwargs)
    results: SPFChainResults = {
        "domain": domain,
        "records": [
            {"domain": domain, "spfRecord": root_query["record"], "type": "initial"}
        ],
        "lookups": 1,
        "dnsLookups": 0,
        "initialRecordCount": len(root_query["records"]),
        "error": None,
        "warnings": list(root_query["warnings"]),
    }
    visited = {domain}

    root_parsed = parse_spf_record(root_query["record"], domain)
    targets, warnings, dns_lookups = _lookup_targets(root_parsed, domain)
    results["warnings"] += warnings
    results["dnsLookups"] += dns_lookups
    # Each entry is (kind, target, domains on the path from the root)
    stack = [(kind, target, (domain,)) for kind, target in reversed(targets)]

    try:
        while stack:
            kind, target, path = stack.pop()
            if results["lookups"] >= lookup_limit:
                raise SPFTooManyDNSLookups(
                    "Resolving the SPF chain requires more than "
                    f"{lookup_limit} SPF record lookups (RFC 7208 § 4.6.4)",
                    dns_lookups=results["lookups"] + 1,
                )
            results["lookups"] += 1
            if target in visited:
                if target in path:
                    pointer = " -> ".join(path + (target,))
                else:
                    pointer = f"{path[-1]} -> {target} (already visited)"
                if kind == "redirect":
                    raise SPFRedirectLoop(f"Redirect loop: {pointer}")
                raise SPFIncludeLoop(f"Include loop: {pointer}")
            visited.add(target)
            try:
                target_query = query_spf_record(
                    target, allow_multiple=True, **query_kwargs
                )
            except (SPFRecordNotFound, DNSException) as error:
                results["warnings"].append(f"{path[-1]}: {kind}:{target}: {error}")
                continue
            results["warnings"] += target_query["warnings"]
            results["records"].append(
                {"domain": target, "spfRecord": target_query["record"], "type": kind}
            )
            target_parsed = parse_spf_record(target_query["record"], target)
            targets, warnings, dns_lookups = _lookup_targets(target_parsed, target)
            results["warnings"] += warnings
            results["dnsLookups"] += dns_lookups
            for child in reversed(targets):
                stack.append((child[0], child[1], path + (target,)))
    except SPFError as error:
        logging.debug(f"SPF chain resolution for {domain} stopped: {error}")
        results["error"] = error

    return results


def _first_all_qualifier(records: Sequence[SpfRecord]) -> Optional[str]:
    for record in records:
        qualifier = parse_spf_record(record["spfRecord"], record["domain"])["all"]
        if qualifier is not None:
            return qualifier
    return None


def validate_spf_chain(chain: SPFChainResults) -> SPFValidationResults:
    """
    Runs the named SPF checks against a resolved chain

    Args:
        chain (dict): The results of :func:`resolve_spf_chain`

    Returns:
        dict: One ``{isValid, errors}`` result per check, plus
        ``firstAllQualifier``
    """
    syntax_errors = []
    deprecated = []
    for record in chain["records"]:
        parsed = parse_spf_record(record["spfRecord"], record["domain"])
        syntax_errors += parsed["errors"]
        for term in parsed["terms"]:
            if not term["modifier"] and term["name"] in DEPRECATED_MECHANISMS:
                deprecated.append(
                    f"{record['domain']}: The {term['name']} mechanism should "
                    "not be used (RFC 7208 § 5.5)"
                )

    initial_count = chain["initialRecordCount"]
    one_initial_errors = []
    if initial_count > 1:
        one_initial_errors.append(
            f"{chain['domain']} publishes {initial_count} SPF records; "
            "only one is permitted (RFC 7208 § 3.2)"
        )

    max_ten_errors = []
    if isinstance(chain["error"], (SPFTooManyDNSLookups, SPFLookupLoop)):
        max_ten_errors.append(str(chain["error"]))
    if chain["dnsLookups"] > SPF_LOOKUP_LIMIT:
        max_ten_errors.append(
            f"The SPF chain for {chain['domain']} requires {chain['dnsLookups']}/"
            f"{SPF_LOOKUP_LIMIT} maximum DNS lookups (RFC 7208 § 4.6.4)"
        )

    qualifier = _first_all_qualifier(chain["records"])
    unsafe_all_errors = []
    if qualifier is None:
        unsafe_all_errors.append(
            "No all mechanism was found; unmatched senders get a neutral result"
        )
    elif qualifier == "+":
        unsafe_all_errors.append(
            "The first all mechanism passes every sender (+all)"
        )

    return {
        "hasSpfRecord": {"isValid": True, "errors": []},
        "syntaxValidation": {
            "isValid": len(syntax_errors) == 0,
            "errors": syntax_errors,
        },
        "oneInitialSpfRecord": {
            "isValid": len(one_initial_errors) == 0,
            "errors": one_initial_errors,
        },
        "maxTenSpfRecords": {
            "isValid": len(max_ten_errors) == 0,
            "errors": max_ten_errors,
        },
        "deprecatedMechanisms": {
            "isValid": len(deprecated) == 0,
            "errors": deprecated,
        },
        "unsafeAllMechanism": {
            "isValid": len(unsafe_all_errors) == 0,
            "errors": unsafe_all_errors,
        },
        "firstAllQualifier": {"qualifier": qualifier or "none"},
    }


def failed_spf_validation(message: str) -> SPFValidationResults:
    """Fails every SPF check with the same message"""
    checks = (
        "hasSpfRecord",
        "syntaxValidation",
        "oneInitialSpfRecord",
        "maxTenSpfRecords",
        "deprecatedMechanisms",
        "unsafeAllMechanism",
    )
    results = {check: {"isValid": False, "errors": [message]} for check in checks}
    results["firstAllQualifier"] = {"qualifier": "none"}
    return results


def score_spf(
    validation_results: SPFValidationResults, *, rubric: Optional[Rubric] = None
) -> ProtocolScore:
    """
    Scores SPF validation results

    Args:
        validation_results (dict): The results of :func:`validate_spf_chain`
        rubric (dict): Replaces :data:`mailposture.scoring.SPF_RUBRIC`

    Returns:
        dict: The SPF protocol score
    """
    if rubric is None:
        rubric = SPF_RUBRIC
    score_items = []
    for check, rubric_item in rubric.items():
        result = validation_results[check]
        passed = result["isValid"]
        score = rubric_item["max_score"] if passed else 0
        details = "; ".join(result["errors"]) or "Passed"
        if check == "unsafeAllMechanism" and passed:
            qualifier = validation_results["firstAllQualifier"]["qualifier"]
            details = f"The first all mechanism is {qualifier}all"
            if qualifier == NEUTRAL_ALL_QUALIFIER:
                score = rubric_item["max_score"] // 2
                details = "neutral"
        score_items.append(make_score_item(rubric_item, score, passed, details))
    return summarize_score_items(score_items)


def spf_failure_results(
    domain: str, message: str, *, rubric: Optional[Rubric] = None
) -> SPFCheckResults:
    """
    Builds SPF results for a domain that could not be evaluated

    Args:
        domain (str): A domain name
        message (str): Why the domain could not be evaluated
        rubric (dict): Replaces :data:`mailposture.scoring.SPF_RUBRIC`

    Returns:
        dict: SPF results with every check failed
    """
    validation_results = failed_spf_validation(message)
    return {
        "domain": domain,
        "spfRecords": [],
        "validationResults": validation_results,
        "scoringResults": score_spf(validation_results, rubric=rubric),
        "warnings": [],
    }


def check_spf(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    rubric: Optional[Rubric] = None,
) -> SPFCheckResults:
    """
    Resolves, validates and scores the SPF chain of a domain

    DNS and SPF errors are reported as failed checks instead of being
    raised.

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query
                               after a transient failure
        rubric (dict): Replaces :data:`mailposture.scoring.SPF_RUBRIC`

    Returns:
        dict: A ``dict`` with the following keys:
            - ``domain`` - The queried domain
            - ``spfRecords`` - The resolved chain
            - ``validationResults`` - The named checks
            - ``scoringResults`` - The SPF protocol score
            - ``warnings`` - A ``list`` of warnings
    """
    domain = normalize_domain(domain)
    try:
        chain = resolve_spf_chain(
            domain,
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except SPFRecordNotFound as error:
        return spf_failure_results(domain, str(error), rubric=rubric)
    except DNSTimeout as error:
        logging.warning(f"SPF lookup for {domain} timed out: {error}")
        return spf_failure_results(domain, f"DNS timeout: {error}", rubric=rubric)
    except DNSException as error:
        return spf_failure_results(domain, f"DNS error: {error}", rubric=rubric)

    validation_results = validate_spf_chain(chain)
    return {
        "domain": domain,
        "spfRecords": chain["records"],
        "validationResults": validation_results,
        "scoringResults": score_spf(validation_results, rubric=rubric),
        "warnings": chain["warnings"],
    }
