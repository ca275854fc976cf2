# -*- coding: utf-8 -*-
"""Scoring rubrics and grades"""

from __future__ import annotations

import math
from typing import TypedDict
from collections.abc import Sequence

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


class ScoreItem(TypedDict):
    """A single line of a scoring rubric, as evaluated for a domain"""

    name: str
    description: str
    score: int
    maxScore: int
    passed: bool
    details: str


class ProtocolScore(TypedDict):
    totalScore: int
    maxPossibleScore: int
    percentage: int
    grade: str
    scoreItems: list[ScoreItem]


class RubricItem(TypedDict):
    name: str
    description: str
    max_score: int


Rubric = dict[str, RubricItem]

# Minimum percentage for each grade, best first
GRADE_THRESHOLDS = ((90, "A"), (80, "B"), (70, "C"), (60, "D"))
FAILING_GRADE = "F"

SPF_RUBRIC: Rubric = {
    "hasSpfRecord": {
        "name": "SPF Record Present",
        "description": "The domain publishes an SPF record",
        "max_score": 30,
    },
    "unsafeAllMechanism": {
        "name": "Safe All Mechanism",
        "description": (
            "The first all mechanism rejects or soft-fails unlisted senders"
        ),
        "max_score": 25,
    },
    "syntaxValidation": {
        "name": "Valid Syntax",
        "description": "Every SPF record in the chain is syntactically valid",
        "max_score": 15,
    },
    "maxTenSpfRecords": {
        "name": "Lookup Limit",
        "description": (
            "The SPF chain resolves within 10 DNS lookups and has no loops"
        ),
        "max_score": 15,
    },
    "oneInitialSpfRecord": {
        "name": "Single SPF Record",
        "description": "The domain publishes exactly one SPF record",
        "max_score": 10,
    },
    "deprecatedMechanisms": {
        "name": "No Deprecated Mechanisms",
        "description": "No record in the chain uses the ptr mechanism",
        "max_score": 5,
    },
}

DKIM_RUBRIC: Rubric = {
    "recordPresent": {
        "name": "DKIM Record Present",
        "description": "A DKIM public key is published for at least one selector",
        "max_score": 30,
    },
    "version": {
        "name": "DKIM Version",
        "description": "Each key record declares v=DKIM1",
        "max_score": 10,
    },
    "keyType": {
        "name": "Key Type",
        "description": "Each key uses a recognized key type (rsa or ed25519)",
        "max_score": 10,
    },
    "keyStrength": {
        "name": "Key Strength",
        "description": "Each RSA key is at least 2048 bits and not revoked",
        "max_score": 40,
    },
    "notTesting": {
        "name": "Production Mode",
        "description": "No key is flagged as being in testing mode (t=y)",
        "max_score": 10,
    },
}

DMARC_RUBRIC: Rubric = {
    "recordPresent": {
        "name": "DMARC Record Present",
        "description": "The domain publishes a DMARC record",
        "max_score": 20,
    },
    "singleRecord": {
        "name": "Single DMARC Record",
        "description": "Exactly one DMARC record is published",
        "max_score": 5,
    },
    "policy": {
        "name": "Policy Strictness",
        "description": "The p tag quarantines or rejects failing mail",
        "max_score": 35,
    },
    "subdomainPolicy": {
        "name": "Subdomain Policy",
        "description": "The effective sp policy protects subdomains",
        "max_score": 10,
    },
    "coverage": {
        "name": "Policy Coverage",
        "description": "The policy applies to 100% of failing mail (pct)",
        "max_score": 15,
    },
    "aggregateReporting": {
        "name": "Aggregate Reporting",
        "description": "Aggregate reports are requested with rua",
        "max_score": 10,
    },
    "forensicReporting": {
        "name": "Forensic Reporting",
        "description": "Failure reports are requested with ruf (optional)",
        "max_score": 5,
    },
}


def get_grade(percentage: int) -> str:
    """
    Converts a percentage into a letter grade

    Args:
        percentage (int): A score percentage

    Returns:
        str: ``A`` through ``D``, or ``F``
    """
    for threshold, grade in GRADE_THRESHOLDS:
        if percentage >= threshold:
            return grade
    return FAILING_GRADE


def get_percentage(total_score: int, max_possible_score: int) -> int:
    """Returns ``total_score`` as a percentage, rounded half up"""
    if max_possible_score <= 0:
        return 0
    return int(math.floor(100 * total_score / max_possible_score + 0.5))


def make_score_item(
    rubric_item: RubricItem, score: int, passed: bool, details: str
) -> ScoreItem:
    """
    Builds a score item from a rubric line

    Args:
        rubric_item (RubricItem): The rubric line being evaluated
        score (int): The points earned, clamped to the line's maximum
        passed (bool): The check passed
        details (str): A human-readable explanation

    Returns:
        ScoreItem: The evaluated rubric line
    """
    max_score = rubric_item["max_score"]
    return {
        "name": rubric_item["name"],
        "description": rubric_item["description"],
        "score": max(0, min(int(score), max_score)),
        "maxScore": max_score,
        "passed": passed,
        "details": details,
    }


def summarize_score_items(score_items: Sequence[ScoreItem]) -> ProtocolScore:
    """
    Totals score items into a protocol score

    Args:
        score_items (list): Evaluated rubric lines

    Returns:
        ProtocolScore: Totals, percentage, grade and the items themselves
    """
    total_score = sum(item["score"] for item in score_items)
    max_possible_score = sum(item["maxScore"] for item in score_items)
    percentage = get_percentage(total_score, max_possible_score)
    return {
        "totalScore": total_score,
        "maxPossibleScore": max_possible_score,
        "percentage": percentage,
        "grade": get_grade(percentage),
        "scoreItems": list(score_items),
    }


def failed_score(rubric: Rubric, details: str) -> ProtocolScore:
    """
    Scores every line of a rubric as failed, for pipelines that could not
    evaluate anything

    Args:
        rubric (Rubric): The protocol rubric
        details (str): Why nothing could be evaluated

    Returns:
        ProtocolScore: A zero score with one failed item per rubric line
    """
    return summarize_score_items(
        [make_score_item(item, 0, False, details) for item in rubric.values()]
    )
