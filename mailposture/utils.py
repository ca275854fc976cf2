# -*- coding: utf-8 -*-
"""DNS and record parsing utility functions"""

from __future__ import annotations

import logging
import re
import unicodedata
from datetime import datetime, timezone
from time import sleep
from typing import Optional
from collections.abc import Sequence

import dns.exception
import dns.resolver
from dns.nameserver import Nameserver
import publicsuffixlist
import pyleri
from expiringdict import ExpiringDict

from mailposture._constants import (
    DNS_CACHE_MAX_AGE_SECONDS,
    DNS_CACHE_MAX_LEN,
    DNS_RETRY_BACKOFF,
    DNS_TIMEOUT,
    DNS_TIMEOUT_RETRIES,
    SYNTAX_ERROR_MARKER,
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

DNS_CACHE = ExpiringDict(
    max_len=DNS_CACHE_MAX_LEN, max_age_seconds=DNS_CACHE_MAX_AGE_SECONDS
)

WSP_REGEX = r"[ \t]"
MAILTO_REGEX_STRING = (
    r"^(mailto):([\w\-!#$%&'*+-/=?^_`{|}~]"
    r"[\w\-.!#$%&'*+-/=?^_`{|}~]*@[\w\-.]+)(!\w+)?"
)
TAG_VALUE_REGEX_STRING = rf"([a-z][a-z0-9_]*){WSP_REGEX}*={WSP_REGEX}*([^;]*)"
DOMAIN_REGEX = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9][a-z0-9-]{0,61}[a-z0-9]$",
    re.IGNORECASE,
)
ZERO_WIDTH_RE = re.compile(r"[\u200B-\u200D\uFEFF]")  # includes ZWSP, ZWNJ, ZWJ, BOM
MAILTO_REGEX = re.compile(MAILTO_REGEX_STRING, re.IGNORECASE)
PSL = publicsuffixlist.PublicSuffixList()


class InvalidDomainInput(ValueError):
    """Raised when a queried domain name is malformed"""


class DNSException(Exception):
    """Raised when a general DNS error occurs"""

    def __init__(self, error):
        if isinstance(error, dns.exception.Timeout) and "timeout" in error.kwargs:
            error.kwargs["timeout"] = round(error.kwargs["timeout"], 1)
        self.error = error
        Exception.__init__(self, str(error))


class DNSExceptionNXDOMAIN(DNSException):
    """Raised when a NXDOMAIN DNS error (RCODE:3) occurs"""


class DNSExceptionNoAnswer(DNSException):
    """Raised when a name exists but has no records of the requested type"""


class DNSTimeout(DNSException):
    """Raised when a DNS query times out after all retries"""


class TagListSyntaxError(Exception):
    """Raised when a ``tag=value`` list is malformed"""


class _TagListGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for ``tag=value`` lists (RFC 6376 § 3.2)"""

    tag_value = pyleri.Regex(TAG_VALUE_REGEX_STRING, re.IGNORECASE)
    START = pyleri.List(
        tag_value,
        delimiter=pyleri.Regex(f"{WSP_REGEX}*;{WSP_REGEX}*"),
        mi=1,
        opt=True,
    )


def get_base_domain(domain: str) -> str:
    """
    Gets the base domain name for the given domain

    .. note::
        Results are based on a list of public domain suffixes at
        https://publicsuffix.org/list/public_suffix_list.dat.

    Args:
        domain (str): A domain or subdomain

    Returns:
        str: The base domain of the given domain

    """
    domain = normalize_domain(domain)
    return PSL.privatesuffix(domain) or domain


def normalize_domain(domain: str) -> str:
    """
    Normalize an input domain by removing zero-width characters, surrounding
    whitespace and the trailing root dot, and lowering it

    Args:
        domain (str): A domain or subdomain

    Returns:
        str: A normalized domain
    """
    domain = unicodedata.normalize("NFC", domain)
    domain = ZERO_WIDTH_RE.sub("", domain)
    return domain.strip().rstrip(".").lower()


def validate_domain(domain: Optional[str]) -> str:
    """
    Normalizes a queried domain and checks that it is a syntactically valid
    hostname

    Args:
        domain (str): A domain name supplied by a caller

    Returns:
        str: The normalized domain

    Raises:
        :exc:`mailposture.utils.InvalidDomainInput`
    """
    if not domain or not isinstance(domain, str):
        raise InvalidDomainInput("A domain name is required.")
    normalized = normalize_domain(domain)
    if len(normalized) > 253 or not DOMAIN_REGEX.match(normalized):
        raise InvalidDomainInput(f"{domain} is not a valid domain name.")
    return normalized


def query_dns(
    domain: str,
    record_type: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    retry_backoff: float = DNS_RETRY_BACKOFF,
    _attempt: int = 0,
    cache: Optional[ExpiringDict] = None,
) -> list[str]:
    """
    Queries DNS

    Timeouts and ``SERVFAIL`` answers are retried with a linear backoff;
    ``NXDOMAIN`` and empty answers are not.

    Args:
        domain (str): The domain or subdomain to query about
        record_type (str): The record type to query for
        nameservers (list): A list of one or more nameservers to use
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): Sets the DNS timeout in seconds
        timeout_retries (int): The number of times to reattempt a query
                               after a transient failure
        retry_backoff (float): Seconds to wait before a retry, multiplied
                               by the attempt number
        cache (ExpiringDict): Cache storage

    Returns:
        list: A list of answers
    """
    domain = normalize_domain(domain)
    record_type = record_type.upper()
    cache_key = f"{domain}_{record_type}"
    if cache is None:
        cache = DNS_CACHE
    records = cache.get(cache_key)
    if isinstance(records, list):
        return records
    if not resolver:
        resolver = dns.resolver.Resolver()
        timeout = float(timeout)
        if nameservers is not None:
            resolver.nameservers = nameservers
        resolver.timeout = timeout
        resolver.lifetime = timeout
    try:
        answers = resolver.resolve(domain, record_type, lifetime=timeout)
    except (dns.exception.Timeout, dns.resolver.NoNameservers) as e:
        _attempt += 1
        if _attempt > timeout_retries:
            raise e
        logging.debug(
            f"Retrying {record_type} query for {domain} after {e.__class__.__name__}"
        )
        sleep(retry_backoff * _attempt)
        return query_dns(
            domain,
            record_type,
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
            retry_backoff=retry_backoff,
            _attempt=_attempt,
            cache=cache,
        )
    if record_type == "TXT":
        # Join each sequence of character-strings into a single record
        records = []
        for resource_record in answers:
            if not resource_record.strings:
                continue
            try:
                records.append(b"".join(resource_record.strings).decode())
            except UnicodeDecodeError:
                records.append("Undecodable characters")
    else:
        records = list(
            map(
                lambda r: r.to_text().rstrip("."),
                answers,
            )
        )
    cache[cache_key] = records

    return records


def get_txt_records(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
) -> list[str]:
    """
    Queries DNS for TXT records

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query
                               after a transient failure

    Returns:
        list: A list of TXT records

    Raises:
        :exc:`mailposture.utils.DNSExceptionNXDOMAIN`
        :exc:`mailposture.utils.DNSExceptionNoAnswer`
        :exc:`mailposture.utils.DNSTimeout`
        :exc:`mailposture.utils.DNSException`
    """
    try:
        records = query_dns(
            domain,
            "TXT",
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except dns.resolver.NXDOMAIN:
        raise DNSExceptionNXDOMAIN(f"The domain {domain} does not exist.")
    except dns.resolver.NoAnswer:
        raise DNSExceptionNoAnswer(
            f"The domain {domain} does not have any TXT records."
        )
    except dns.exception.Timeout as error:
        raise DNSTimeout(error)
    except Exception as error:
        raise DNSException(error)

    return records


def parse_tag_list(
    record: str, *, syntax_error_marker: str = SYNTAX_ERROR_MARKER
) -> list[tuple[str, str]]:
    """
    Parses a ``tag=value`` list, as used by DKIM key and DMARC records

    Tag names are lowered; values are stripped of surrounding whitespace.

    Args:
        record (str): A ``;`` separated list of ``tag=value`` pairs
        syntax_error_marker (str): The maker for pointing out syntax errors

    Returns:
        list: ``(tag, value)`` tuples in the order they appear

    Raises:
        :exc:`mailposture.utils.TagListSyntaxError`
    """
    record = record.strip()
    parsed_record = _TagListGrammar().parse(record)
    if not parsed_record.is_valid:
        pos = parsed_record.pos
        expecting = list(
            map(lambda x: str(x).strip('"'), list(parsed_record.expecting))
        )
        expecting_str = " or ".join(expecting) or "a tag=value pair"
        marked_record = record[:pos] + syntax_error_marker + record[pos:]
        raise TagListSyntaxError(
            f"Expected {expecting_str} at position {pos} "
            f"(marked with {syntax_error_marker}) in: {marked_record}"
        )

    pairs = []
    seen_tags = []
    for part in record.split(";"):
        if part.strip() == "":
            continue
        tag, _, value = part.partition("=")
        tag = tag.strip().lower()
        if tag in seen_tags:
            raise TagListSyntaxError(f"Duplicate {tag} tags are not permitted")
        seen_tags.append(tag)
        pairs.append((tag, value.strip()))

    return pairs


def parse_mailto_uri(uri: str) -> Optional[str]:
    """
    Extracts the email address from a ``mailto:`` reporting URI

    Args:
        uri (str): A reporting URI, e.g. ``mailto:dmarc@example.com!10m``

    Returns:
        str: The email address, or ``None`` if the URI is not a valid
        ``mailto`` URI
    """
    match = MAILTO_REGEX.match(uri.strip())
    if match is None:
        return None
    return match.group(2)


def utc_timestamp() -> str:
    """Returns the current UTC time as an ISO 8601 string ending in ``Z``"""
    timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return timestamp.replace("+00:00", "Z")
