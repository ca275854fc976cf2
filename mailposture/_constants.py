# -*- coding: utf-8 -*-
"""Constant values"""

from __future__ import annotations
import os

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

__version__ = "1.0.0"

SYNTAX_ERROR_MARKER = "➞"

# Per query and per pipeline limits, in seconds
DNS_TIMEOUT = 5.0
DNS_TIMEOUT_RETRIES = 1
DNS_RETRY_BACKOFF = 0.5
PIPELINE_TIMEOUT = 15.0

# RFC 7208 § 4.6.4
SPF_LOOKUP_LIMIT = 10

# Decoded public key length in bytes -> estimated RSA modulus size in bits.
# Checked in order; anything at or below the last breakpoint is 512 bits.
DKIM_KEY_SIZE_BREAKPOINTS = ((512, 4096), (256, 2048), (128, 1024))
DKIM_MIN_KEY_BITS = 512
DEFAULT_DKIM_SELECTORS = ["default", "google", "selector1", "selector2"]

CACHE_MAX_LEN = 200000
CACHE_MAX_AGE_SECONDS = 1800

env = os.environ

if "DNS_TIMEOUT" in env:
    DNS_TIMEOUT = float(env["DNS_TIMEOUT"])
if "DNS_TIMEOUT_RETRIES" in env:
    DNS_TIMEOUT_RETRIES = int(env["DNS_TIMEOUT_RETRIES"])
if "PIPELINE_TIMEOUT" in env:
    PIPELINE_TIMEOUT = float(env["PIPELINE_TIMEOUT"])
if "DKIM_SELECTORS" in env:
    DEFAULT_DKIM_SELECTORS = [
        s.strip() for s in env["DKIM_SELECTORS"].split(",") if s.strip()
    ]

if "CACHE_MAX_LEN" in env:
    CACHE_MAX_LEN = int(env["CACHE_MAX_LEN"])
if "CACHE_MAX_AGE_SECONDS" in env:
    CACHE_MAX_AGE_SECONDS = int(env["CACHE_MAX_AGE_SECONDS"])

DNS_CACHE_MAX_LEN = CACHE_MAX_LEN
if "DNS_CACHE_MAX_LEN" in env:
    DNS_CACHE_MAX_LEN = int(env["DNS_CACHE_MAX_LEN"])
DNS_CACHE_MAX_AGE_SECONDS = CACHE_MAX_AGE_SECONDS
if "DNS_CACHE_MAX_AGE_SECONDS" in env:
    DNS_CACHE_MAX_AGE_SECONDS = int(env["DNS_CACHE_MAX_AGE_SECONDS"])

RESULT_CACHE_MAX_LEN = 10000
if "RESULT_CACHE_MAX_LEN" in env:
    RESULT_CACHE_MAX_LEN = int(env["RESULT_CACHE_MAX_LEN"])
RESULT_CACHE_MAX_AGE_SECONDS = 300
if "RESULT_CACHE_MAX_AGE_SECONDS" in env:
    RESULT_CACHE_MAX_AGE_SECONDS = int(env["RESULT_CACHE_MAX_AGE_SECONDS"])
