# -*- coding: utf-8 -*-
"""DomainKeys Identified Mail (DKIM) key record validation and scoring"""

from __future__ import annotations

import logging
import math
import re
from typing import Optional, TypedDict
from collections.abc import Sequence

import dns.resolver
from dns.nameserver import Nameserver

from mailposture._constants import (
    DEFAULT_DKIM_SELECTORS,
    DKIM_KEY_SIZE_BREAKPOINTS,
    DKIM_MIN_KEY_BITS,
    DNS_TIMEOUT,
    DNS_TIMEOUT_RETRIES,
    SYNTAX_ERROR_MARKER,
)
from mailposture.scoring import (
    DKIM_RUBRIC,
    ProtocolScore,
    Rubric,
    failed_score,
    make_score_item,
    summarize_score_items,
)
from mailposture.utils import (
    DNSException,
    DNSExceptionNoAnswer,
    DNSExceptionNXDOMAIN,
    TagListSyntaxError,
    get_txt_records,
    normalize_domain,
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

DKIM_VERSION = "DKIM1"
DKIM_KEY_TYPES = ("rsa", "ed25519")
DKIM_PREFERRED_HASH = "sha256"
DKIM_SERVICE_TYPES = ("*", "email")
DKIM_TESTING_FLAG = "y"
ED25519_KEY_BITS = 256
STRONG_KEY_BITS = 2048
WEAK_KEY_BITS = 1024

BASE64_REGEX = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")
DKIM_PUBLIC_KEY_TAG_REGEX = re.compile(r"(?:^|;)\s*p\s*=", re.IGNORECASE)


class DKIMError(Exception):
    """Raised when a fatal DKIM error occurs"""


class DKIMRecordNotFound(DKIMError):
    """Raised when a DKIM key record could not be found for a selector"""


class DKIMSyntaxError(DKIMError):
    """Raised when a DKIM key record syntax error is found"""


class DKIMQueryResults(TypedDict):
    record: str
    location: str
    warnings: list[str]


class DkimParsedData(TypedDict):
    version: str
    algorithm: str
    keyType: str
    publicKey: str
    flags: list[str]
    notes: Optional[str]


class DkimRecord(TypedDict):
    domain: str
    selector: str
    rawRecord: str
    parsedData: DkimParsedData
    retrievedAt: str


class DKIMCheckResults(TypedDict):
    domain: str
    selectors: list[str]
    records: list[DkimRecord]
    score: ProtocolScore
    warnings: list[str]


def _is_dkim_record(record: str) -> bool:
    return record.lower().startswith("v=dkim1") or bool(
        DKIM_PUBLIC_KEY_TAG_REGEX.search(record)
    )


def query_dkim_record(
    domain: str,
    selector: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
) -> DKIMQueryResults:
    """
    Queries DNS for the DKIM key record of a selector

    Args:
        domain (str): A domain name
        selector (str): A DKIM selector
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query
                               after a transient failure

    Returns:
        dict: a ``dict`` with the following keys:
                     - ``record`` - the unparsed DKIM key record string
                     - ``location`` - the name where the record was found
                     - ``warnings`` - warning conditions found

    Raises:
        :exc:`mailposture.dkim.DKIMRecordNotFound`
        :exc:`mailposture.utils.DNSTimeout`
        :exc:`mailposture.utils.DNSException`
    """
    domain = normalize_domain(domain)
    location = f"{selector.strip().lower()}._domainkey.{domain}"
    logging.debug(f"Checking for a DKIM record at {location}")
    warnings = []
    try:
        answers = get_txt_records(
            location,
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except (DNSExceptionNXDOMAIN, DNSExceptionNoAnswer):
        raise DKIMRecordNotFound(f"A DKIM record does not exist at {location}.")

    dkim_records = [record for record in answers if _is_dkim_record(record)]
    if len(dkim_records) == 0:
        raise DKIMRecordNotFound(f"A DKIM record does not exist at {location}.")
    if len(dkim_records) > 1:
        warnings.append(
            f"Multiple DKIM records were found at {location}; only the first is used."
        )

    return {"record": dkim_records[0], "location": location, "warnings": warnings}


def parse_dkim_record(
    record: str, *, syntax_error_marker: str = SYNTAX_ERROR_MARKER
) -> DkimParsedData:
    """
    Parses a DKIM key record (RFC 6376 § 3.6.1)

    Unknown tags are ignored.

    Args:
        record (str): A DKIM key record
        syntax_error_marker (str): The maker for pointing out syntax errors

    Returns:
        dict: a ``dict`` with the following keys:
         - ``version`` - The ``v`` tag, or an empty string
         - ``algorithm`` - The key type and hash, e.g. ``rsa-sha256``
         - ``keyType`` - The ``k`` tag
         - ``publicKey`` - The ``p`` tag; empty for a revoked key
         - ``flags`` - The ``t`` flags
         - ``notes`` - The ``n`` tag, or ``None``

    Raises:
        :exc:`mailposture.dkim.DKIMSyntaxError`
    """
    try:
        pairs = parse_tag_list(record, syntax_error_marker=syntax_error_marker)
    except TagListSyntaxError as error:
        raise DKIMSyntaxError(str(error))
    tags = dict(pairs)

    version = tags.get("v", "")
    if "v" in tags:
        if pairs[0][0] != "v":
            raise DKIMSyntaxError("The v tag must be the first tag in the record.")
        if version != DKIM_VERSION:
            raise DKIMSyntaxError(
                f"The v tag must be {DKIM_VERSION}, not {version or 'empty'}."
            )

    if "p" not in tags:
        raise DKIMSyntaxError('The record is missing the required public key ("p") tag.')
    public_key = re.sub(r"\s+", "", tags["p"])
    if public_key and not BASE64_REGEX.match(public_key):
        raise DKIMSyntaxError("The p tag is not valid base64.")

    if "s" in tags:
        service_types = [s.strip().lower() for s in tags["s"].split(":")]
        if not any(s in DKIM_SERVICE_TYPES for s in service_types):
            raise DKIMSyntaxError(
                f"The key is not intended for email (s={tags['s']})."
            )

    key_type = tags.get("k", "rsa").lower() or "rsa"
    hashes = [h.strip().lower() for h in tags.get("h", "").split(":") if h.strip()]
    if len(hashes) == 0 or DKIM_PREFERRED_HASH in hashes:
        hash_algorithm = DKIM_PREFERRED_HASH
    else:
        hash_algorithm = hashes[0]
    flags = [f.strip().lower() for f in tags.get("t", "").split(":") if f.strip()]

    return {
        "version": version,
        "algorithm": f"{key_type}-{hash_algorithm}",
        "keyType": key_type,
        "publicKey": public_key,
        "flags": flags,
        "notes": tags.get("n") or None,
    }


def estimate_dkim_key_bits(public_key: str, key_type: str = "rsa") -> int:
    """
    Estimates the size of a DKIM public key from its base64 length

    Args:
        public_key (str): The base64 ``p`` tag value
        key_type (str): The ``k`` tag value

    Returns:
        int: The estimated key size in bits; ``0`` for a revoked key
    """
    if not public_key:
        return 0
    if key_type == "ed25519":
        return ED25519_KEY_BITS
    decoded_length = math.ceil(len(public_key) * 3 / 4)
    for min_length, bits in DKIM_KEY_SIZE_BREAKPOINTS:
        if decoded_length > min_length:
            return bits
    return DKIM_MIN_KEY_BITS


def _key_strength(record: DkimRecord, max_score: int) -> tuple[int, str]:
    parsed = record["parsedData"]
    selector = record["selector"]
    if not parsed["publicKey"]:
        return 0, f"{selector}: revoked key"
    bits = estimate_dkim_key_bits(parsed["publicKey"], parsed["keyType"])
    description = f"{selector}: {bits}-bit {parsed['keyType']} key"
    if parsed["keyType"] == "ed25519" or bits >= STRONG_KEY_BITS:
        return max_score, description
    if bits >= WEAK_KEY_BITS:
        return max_score // 2, description
    return 0, description


def score_dkim(
    records: Sequence[DkimRecord],
    *,
    errors: Optional[Sequence[str]] = None,
    rubric: Optional[Rubric] = None,
) -> ProtocolScore:
    """
    Scores DKIM key records

    When several selectors publish keys, each item scores the weakest
    record.

    Args:
        records (list): Parsed DKIM records
        errors (list): Why other selectors were excluded
        rubric (dict): Replaces :data:`mailposture.scoring.DKIM_RUBRIC`

    Returns:
        dict: The DKIM protocol score
    """
    if rubric is None:
        rubric = DKIM_RUBRIC
    errors = list(errors or [])
    if len(records) == 0:
        return failed_score(rubric, "; ".join(errors) or "No DKIM record was found")

    selectors = ", ".join(record["selector"] for record in records)
    present_details = f"Found DKIM records for selectors: {selectors}"
    if errors:
        present_details += f"; excluded: {'; '.join(errors)}"

    bad_versions = [
        r["selector"] for r in records if r["parsedData"]["version"] != DKIM_VERSION
    ]
    bad_key_types = [
        r["selector"] for r in records if r["parsedData"]["keyType"] not in DKIM_KEY_TYPES
    ]
    testing = [
        r["selector"]
        for r in records
        if DKIM_TESTING_FLAG in r["parsedData"]["flags"]
    ]

    score_items = []
    for check, rubric_item in rubric.items():
        max_score = rubric_item["max_score"]
        if check == "recordPresent":
            item = make_score_item(rubric_item, max_score, True, present_details)
        elif check == "version":
            passed = len(bad_versions) == 0
            details = (
                f"All records declare v={DKIM_VERSION}"
                if passed
                else f"Missing v={DKIM_VERSION}: {', '.join(bad_versions)}"
            )
            item = make_score_item(rubric_item, max_score if passed else 0, passed, details)
        elif check == "keyType":
            passed = len(bad_key_types) == 0
            details = (
                "All keys use a recognized key type"
                if passed
                else f"Unrecognized key type: {', '.join(bad_key_types)}"
            )
            item = make_score_item(rubric_item, max_score if passed else 0, passed, details)
        elif check == "keyStrength":
            strengths = [_key_strength(record, max_score) for record in records]
            strength_score, strength_details = min(strengths, key=lambda s: s[0])
            if strength_score == max_score:
                strength_details = "; ".join(details for _, details in strengths)
            item = make_score_item(
                rubric_item,
                strength_score,
                strength_score == max_score,
                strength_details,
            )
        elif check == "notTesting":
            passed = len(testing) == 0
            details = (
                "No key is in testing mode"
                if passed
                else f"Testing mode (t=y): {', '.join(testing)}"
            )
            item = make_score_item(rubric_item, max_score if passed else 0, passed, details)
        else:
            continue
        score_items.append(item)

    return summarize_score_items(score_items)


def dkim_failure_results(
    domain: str,
    message: str,
    *,
    selectors: Optional[Sequence[str]] = None,
    rubric: Optional[Rubric] = None,
) -> DKIMCheckResults:
    """
    Builds DKIM results for a domain that could not be evaluated

    Args:
        domain (str): A domain name
        message (str): Why the domain could not be evaluated
        selectors (list): The selectors that were to be checked
        rubric (dict): Replaces :data:`mailposture.scoring.DKIM_RUBRIC`

    Returns:
        dict: DKIM results with every item failed
    """
    if rubric is None:
        rubric = DKIM_RUBRIC
    return {
        "domain": domain,
        "selectors": list(selectors or DEFAULT_DKIM_SELECTORS),
        "records": [],
        "score": failed_score(rubric, message),
        "warnings": [],
    }


def check_dkim(
    domain: str,
    *,
    selectors: Optional[Sequence[str]] = None,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DNS_TIMEOUT,
    timeout_retries: int = DNS_TIMEOUT_RETRIES,
    rubric: Optional[Rubric] = None,
) -> DKIMCheckResults:
    """
    Retrieves, parses and scores the DKIM key records of a domain

    Selectors without a record are skipped. Selectors with a malformed
    record are excluded and reported in the score details.

    Args:
        domain (str): A domain name
        selectors (list): The selectors to check; defaults to
                          :data:`mailposture._constants.DEFAULT_DKIM_SELECTORS`
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query
                               after a transient failure
        rubric (dict): Replaces :data:`mailposture.scoring.DKIM_RUBRIC`

    Returns:
        dict: A ``dict`` with the following keys:
            - ``domain`` - The queried domain
            - ``selectors`` - The selectors that were checked
            - ``records`` - The parsed DKIM records
            - ``score`` - The DKIM protocol score
            - ``warnings`` - A ``list`` of warnings
    """
    domain = normalize_domain(domain)
    if not selectors:
        selectors = DEFAULT_DKIM_SELECTORS
    selectors = [s.strip().lower() for s in selectors if s.strip()]
    records = []
    errors = []
    warnings = []
    for selector in selectors:
        try:
            query = query_dkim_record(
                domain,
                selector,
                nameservers=nameservers,
                resolver=resolver,
                timeout=timeout,
                timeout_retries=timeout_retries,
            )
            parsed = parse_dkim_record(query["record"])
        except DKIMRecordNotFound as error:
            logging.debug(str(error))
            continue
        except DKIMSyntaxError as error:
            errors.append(f"{selector}: {error}")
            continue
        except DNSException as error:
            errors.append(f"{selector}: DNS error: {error}")
            continue
        warnings += query["warnings"]
        records.append(
            {
                "domain": domain,
                "selector": selector,
                "rawRecord": query["record"],
                "parsedData": parsed,
                "retrievedAt": utc_timestamp(),
            }
        )

    return {
        "domain": domain,
        "selectors": selectors,
        "records": records,
        "score": score_dkim(records, errors=errors, rubric=rubric),
        "warnings": warnings,
    }
