#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Automated tests"""

import os
import tempfile
import threading
import time
import unittest
import uuid
from functools import partial

import dns.exception
import dns.resolver

import mailposture
import mailposture._cli
import mailposture.api
import mailposture.cache
import mailposture.config
import mailposture.dkim
import mailposture.dmarc
import mailposture.scoring
import mailposture.spf
import mailposture.utils

RSA_2048_KEY = "MIIBIjANBgkqhkiG9w0BAQEFAAOCAQ8AMIIBCgKCAQEA" + "A" * 348
RSA_1024_KEY = "MIGfMA0GCSqGSIb3DQEBAQUAA4GNADCBiQKBgQC" + "A" * 178
ED25519_KEY = "11qYAYKxCrfVS/7TyWQHOg7hcvPapiMlrwIaaPcHURo="

GOOD_DMARC = "v=DMARC1; p=reject; pct=100; rua=mailto:dmarc@example.com"


class FakeTXTRecord(object):
    def __init__(self, text):
        # Long records are published as several character-strings
        encoded = text.encode()
        self.strings = [encoded[i : i + 255] for i in range(0, len(encoded), 255)]


class FakeResolver(object):
    """Answers TXT queries from a dictionary instead of the network"""

    def __init__(self, records=None, timeouts=(), delay=None, delay_match=""):
        self.records = {k.lower(): v for k, v in (records or {}).items()}
        self.timeouts = set(timeouts)
        self.delay = delay
        self.delay_match = delay_match
        self.queries = []

    def resolve(self, name, rdtype, lifetime=None):
        name = name.lower()
        self.queries.append((name, rdtype))
        if self.delay and self.delay_match in name:
            time.sleep(self.delay)
        if name in self.timeouts:
            raise dns.exception.Timeout(timeout=lifetime or 5.0)
        if name not in self.records:
            raise dns.resolver.NXDOMAIN
        if len(self.records[name]) == 0:
            raise dns.resolver.NoAnswer
        return [FakeTXTRecord(record) for record in self.records[name]]


def chained_includes(domain, count):
    """Builds a chain of SPF records, each including the next"""
    records = {domain: ["v=spf1 include:l1.example.com -all"]}
    for i in range(1, count):
        records[f"l{i}.example.com"] = [f"v=spf1 include:l{i + 1}.example.com -all"]
    records[f"l{count}.example.com"] = ["v=spf1 -all"]
    return records


def score_item(score, name):
    for item in score["scoreItems"]:
        if item["name"] == name:
            return item
    raise KeyError(name)


class Test(unittest.TestCase):
    def setUp(self):
        mailposture.utils.DNS_CACHE.clear()

    def testGetBaseDomain(self):
        subdomain = "foo.example.com"
        result = mailposture.utils.get_base_domain(subdomain)
        assert result == "example.com"

        # Test reserved domains
        subdomain = "_dmarc.nonauth-rua.invalid.example"
        result = mailposture.utils.get_base_domain(subdomain)
        assert result == "invalid.example"

        subdomain = "_dmarc.nonauth-rua.invalid.test"
        result = mailposture.utils.get_base_domain(subdomain)
        assert result == "invalid.test"

    def testValidateDomain(self):
        """Queried domains are normalized, and malformed ones rejected"""
        self.assertEqual(
            mailposture.utils.validate_domain(" Example.COM. "), "example.com"
        )
        self.assertEqual(
            mailposture.utils.validate_domain("exa\u200bmple.com"), "example.com"
        )
        for domain in ["", None, "localhost", "exa mple.com", "-bad.example.com"]:
            self.assertRaises(
                mailposture.utils.InvalidDomainInput,
                mailposture.utils.validate_domain,
                domain,
            )

    def testTXTStringsAreJoined(self):
        """TXT records split into several character-strings are joined"""
        long_record = "v=spf1 " + " ".join(
            f"ip4:192.0.2.{i}" for i in range(1, 40)
        ) + " -all"
        resolver = FakeResolver({"example.com": [long_record]})
        records = mailposture.utils.get_txt_records("example.com", resolver=resolver)
        self.assertEqual(records, [long_record])

    def testQueryRetriesTimeouts(self):
        """DNS timeouts are retried, and cached answers are reused"""

        class FlakyResolver(FakeResolver):
            def resolve(self, name, rdtype, lifetime=None):
                if len(self.queries) == 0:
                    self.queries.append((name, rdtype))
                    raise dns.exception.Timeout(timeout=lifetime)
                return FakeResolver.resolve(self, name, rdtype, lifetime=lifetime)

        resolver = FlakyResolver({"example.com": ["v=spf1 -all"]})
        records = mailposture.utils.query_dns(
            "example.com", "TXT", resolver=resolver, timeout_retries=1, retry_backoff=0
        )
        self.assertEqual(records, ["v=spf1 -all"])
        self.assertEqual(len(resolver.queries), 2)

        mailposture.utils.query_dns("example.com", "TXT", resolver=resolver)
        self.assertEqual(len(resolver.queries), 2)

    def testDNSTimeoutIsRaised(self):
        """Timeouts that outlast the retries raise DNSTimeout"""
        resolver = FakeResolver(timeouts=["example.com"])
        self.assertRaises(
            mailposture.utils.DNSTimeout,
            mailposture.utils.get_txt_records,
            "example.com",
            resolver=resolver,
            timeout_retries=0,
        )

    def testParseTagList(self):
        """Tag lists are split in order, with tags lowered"""
        pairs = mailposture.utils.parse_tag_list("V=DKIM1; k = rsa ;p=abc;")
        self.assertEqual(pairs, [("v", "DKIM1"), ("k", "rsa"), ("p", "abc")])
        self.assertRaises(
            mailposture.utils.TagListSyntaxError,
            mailposture.utils.parse_tag_list,
            "v=DKIM1; p=abc; p=def",
        )
        self.assertRaises(
            mailposture.utils.TagListSyntaxError,
            mailposture.utils.parse_tag_list,
            "v=DKIM1; 1p=abc",
        )

    def testParseMailtoURI(self):
        self.assertEqual(
            mailposture.utils.parse_mailto_uri("mailto:dmarc@example.com!10m"),
            "dmarc@example.com",
        )
        self.assertIsNone(mailposture.utils.parse_mailto_uri("dmarc@example.com"))

    def testGrades(self):
        """Grades never improve as the percentage drops"""
        get_grade = mailposture.scoring.get_grade
        self.assertEqual(get_grade(100), "A")
        self.assertEqual(get_grade(90), "A")
        self.assertEqual(get_grade(89), "B")
        self.assertEqual(get_grade(80), "B")
        self.assertEqual(get_grade(70), "C")
        self.assertEqual(get_grade(60), "D")
        self.assertEqual(get_grade(59), "F")
        self.assertEqual(get_grade(0), "F")
        ranks = ["FDCBA".index(get_grade(percentage)) for percentage in range(101)]
        self.assertEqual(ranks, sorted(ranks))

    def testPercentageRounding(self):
        get_percentage = mailposture.scoring.get_percentage
        self.assertEqual(get_percentage(295, 300), 98)
        self.assertEqual(get_percentage(1, 200), 1)
        self.assertEqual(get_percentage(0, 0), 0)

    def testScoreItemsAreClamped(self):
        rubric_item = mailposture.scoring.SPF_RUBRIC["hasSpfRecord"]
        item = mailposture.scoring.make_score_item(rubric_item, 99, True, "")
        self.assertEqual(item["score"], item["maxScore"])
        item = mailposture.scoring.make_score_item(rubric_item, -5, False, "")
        self.assertEqual(item["score"], 0)

    def testUppercaseSPFMechanism(self):
        """Treat uppercase SPF mechanisms as valid"""
        spf_record = "v=spf1 IP4:147.75.8.208 -ALL"
        domain = "example.no"

        results = mailposture.spf.parse_spf_record(spf_record, domain)

        self.assertEqual(len(results["warnings"]), 0)
        self.assertEqual(len(results["errors"]), 0)
        self.assertEqual(results["all"], "-")

    def testSplitSPFRecord(self):
        """Split SPF records are parsed properly"""

        rec = '"v=spf1 ip4:147.75.8.208 " "include:_spf.salesforce.com -all"'

        parsed_record = mailposture.spf.parse_spf_record(rec, "example.com")

        self.assertEqual(parsed_record["all"], "-")
        self.assertEqual(len(parsed_record["terms"]), 3)

    def testJunkAfterAll(self):
        """Ignore any mechanisms after the all mechanism, but warn about it"""
        rec = "v=spf1 ip4:213.5.39.110 -all MS=83859DAEBD1978F9A7A67D3"
        domain = "avd.dk"

        parsed_record = mailposture.spf.parse_spf_record(rec, domain)
        self.assertEqual(len(parsed_record["warnings"]), 1)
        self.assertEqual(len(parsed_record["errors"]), 0)

    def testSPFSyntaxErrors(self):
        """SPF record syntax errors raise SPFSyntaxError"""

        spf_record = (
            '"v=spf1 mx a:mail.cohaesio.net include: trustpilotservice.com ~all"'
        )
        domain = "2021.ai"
        self.assertRaises(
            mailposture.spf.SPFSyntaxError,
            mailposture.spf.validate_spf_syntax,
            spf_record,
            domain,
        )

    def testSPFInvalidIPAddresses(self):
        """Invalid ip4 and ip6 mechanism values raise SPFSyntaxError"""
        records = [
            "v=spf1 ip4:78.46.96.236 +a +mx +ip4:relay.mailchannels.net ~all",
            "v=spf1 ip4:1200:0000:AB00:1234:0000:2552:7777:1313 ~all",
            "v=spf1 ip4:78.46.96.236/99 ~all",
            "v=spf1 ip6:1200:0000:AB00:1234:O000:2552:7777:1313 ~all",
            "v=spf1 ip6:78.46.96.236 ~all",
            "v=spf1 ip6:1200:0000:AB00:1234:0000:2552:7777:1313/130 ~all",
        ]
        for record in records:
            self.assertRaises(
                mailposture.spf.SPFSyntaxError,
                mailposture.spf.validate_spf_syntax,
                record,
                "surftown.dk",
            )

    def testSPFConcatenatedAll(self):
        """An all mechanism glued to the previous term is a syntax error"""
        parsed = mailposture.spf.parse_spf_record(
            "v=spf1 ip4:203.0.113.7~all", "example.com"
        )
        self.assertTrue(
            any("Expected whitespace before 'all'" in e for e in parsed["errors"])
        )

    def testSPFMacros(self):
        """SPF macros can be used with the exists and include mechanisms"""
        records = [
            "v=spf1 exists:%{i}.spf.hc0000-xx.iphmx.com ~all",
            "v=spf1 include:%{ir}.%{v}.%{d}.spf.has.pphosted.com ~all",
        ]
        for record in records:
            results = mailposture.spf.parse_spf_record(record, "example.com")
            self.assertEqual(results["errors"], [])
            self.assertEqual(len(results["terms"]), 2)

        results = mailposture.spf.parse_spf_record(
            "v=spf1 exists:%{z}.example.com ~all", "example.com"
        )
        self.assertEqual(len(results["errors"]), 1)

    def testSPFRedirectIgnoredWithAll(self):
        """The redirect modifier has no effect when there is an all mechanism"""
        parsed = mailposture.spf.parse_spf_record(
            "v=spf1 redirect=_spf.example.com -all", "example.com"
        )
        self.assertIsNone(parsed["redirect"])
        self.assertEqual(len(parsed["warnings"]), 1)

    def testSPFVersionTerminator(self):
        """Records beginning with v=spf10 are not SPF records"""
        resolver = FakeResolver({"example.com": ["v=spf10 -all"]})
        self.assertRaises(
            mailposture.spf.SPFRecordNotFound,
            mailposture.spf.query_spf_record,
            "example.com",
            resolver=resolver,
        )

    def testMultipleSPFRecords(self):
        """Publishing two SPF records fails the single record check"""
        resolver = FakeResolver({"example.com": ["v=spf1 -all", "v=spf1 ~all"]})
        self.assertRaises(
            mailposture.spf.MultipleSPFTXTRecords,
            mailposture.spf.query_spf_record,
            "example.com",
            resolver=resolver,
        )
        mailposture.utils.DNS_CACHE.clear()
        results = mailposture.spf.check_spf("example.com", resolver=resolver)
        self.assertFalse(results["validationResults"]["oneInitialSpfRecord"]["isValid"])
        self.assertEqual(results["spfRecords"][0]["spfRecord"], "v=spf1 -all")

    def testSPFStrictAll(self):
        """A lone -all record passes every check"""
        resolver = FakeResolver({"example.com": ["v=spf1 -all"]})
        results = mailposture.spf.check_spf("example.com", resolver=resolver)
        validation = results["validationResults"]
        self.assertTrue(validation["hasSpfRecord"]["isValid"])
        self.assertEqual(validation["firstAllQualifier"]["qualifier"], "-")
        self.assertTrue(validation["unsafeAllMechanism"]["isValid"])
        self.assertEqual(results["scoringResults"]["totalScore"], 100)
        self.assertEqual(results["scoringResults"]["grade"], "A")
        self.assertEqual(
            results["spfRecords"],
            [{"domain": "example.com", "spfRecord": "v=spf1 -all", "type": "initial"}],
        )

    def testSPFPassAllWithMissingIncludes(self):
        """Includes without SPF records are skipped, and +all is unsafe"""
        resolver = FakeResolver(
            {"example.com": ["v=spf1 include:a.com include:b.com +all"]}
        )
        results = mailposture.spf.check_spf("example.com", resolver=resolver)
        validation = results["validationResults"]
        self.assertEqual(len(results["spfRecords"]), 1)
        self.assertFalse(validation["unsafeAllMechanism"]["isValid"])
        self.assertEqual(validation["firstAllQualifier"]["qualifier"], "+")
        self.assertLess(results["scoringResults"]["percentage"], 100)
        self.assertNotEqual(results["scoringResults"]["grade"], "A")
        self.assertEqual(len(results["warnings"]), 2)

    def testSPFNeutralAll(self):
        """?all earns half of the unsafe all points"""
        resolver = FakeResolver({"example.com": ["v=spf1 ?all"]})
        results = mailposture.spf.check_spf("example.com", resolver=resolver)
        item = score_item(results["scoringResults"], "Safe All Mechanism")
        self.assertEqual(item["score"], 12)
        self.assertEqual(item["details"], "neutral")

    def testSPFMissingAll(self):
        """A chain without an all mechanism fails the unsafe all check"""
        resolver = FakeResolver({"example.com": ["v=spf1 ip4:192.0.2.1"]})
        results = mailposture.spf.check_spf("example.com", resolver=resolver)
        validation = results["validationResults"]
        self.assertFalse(validation["unsafeAllMechanism"]["isValid"])
        self.assertEqual(validation["firstAllQualifier"]["qualifier"], "none")

    def testSPFDeprecatedMechanism(self):
        resolver = FakeResolver({"example.com": ["v=spf1 ptr -all"]})
        results = mailposture.spf.check_spf("example.com", resolver=resolver)
        self.assertFalse(results["validationResults"]["deprecatedMechanisms"]["isValid"])

    def testSPFChainOrder(self):
        """Includes are visited depth-first, in the order they appear"""
        resolver = FakeResolver(
            {
                "example.com": ["v=spf1 include:a.example.com include:b.example.com -all"],
                "a.example.com": ["v=spf1 include:c.example.com ~all"],
                "b.example.com": ["v=spf1 redirect=d.example.com"],
                "c.example.com": ["v=spf1 ip4:192.0.2.1 ~all"],
                "d.example.com": ["v=spf1 ip4:192.0.2.2 -all"],
            }
        )
        chain = mailposture.spf.resolve_spf_chain("example.com", resolver=resolver)
        self.assertIsNone(chain["error"])
        self.assertEqual(
            [(r["domain"], r["type"]) for r in chain["records"]],
            [
                ("example.com", "initial"),
                ("a.example.com", "include"),
                ("c.example.com", "include"),
                ("b.example.com", "include"),
                ("d.example.com", "redirect"),
            ],
        )

    def testSPFLookupLimit(self):
        """Resolution stops at the tenth record of an over-long chain"""
        resolver = FakeResolver(chained_includes("example.com", 11))
        chain = mailposture.spf.resolve_spf_chain("example.com", resolver=resolver)
        self.assertIsInstance(chain["error"], mailposture.spf.SPFTooManyDNSLookups)
        self.assertEqual(len(chain["records"]), 10)
        self.assertEqual(chain["records"][0]["type"], "initial")
        self.assertTrue(all(r["type"] == "include" for r in chain["records"][1:]))

        validation = mailposture.spf.validate_spf_chain(chain)
        self.assertFalse(validation["maxTenSpfRecords"]["isValid"])

    def testSPFChainWithinLimit(self):
        """A chain of exactly ten records resolves"""
        resolver = FakeResolver(chained_includes("example.com", 9))
        chain = mailposture.spf.resolve_spf_chain("example.com", resolver=resolver)
        self.assertIsNone(chain["error"])
        self.assertEqual(len(chain["records"]), 10)

    def testSPFIncludeLoop(self):
        """SPF record with include loop is reported as SPFIncludeLoop"""
        resolver = FakeResolver({"example.com": ["v=spf1 include:example.com"]})
        chain = mailposture.spf.resolve_spf_chain("example.com", resolver=resolver)
        self.assertIsInstance(chain["error"], mailposture.spf.SPFIncludeLoop)
        self.assertEqual(len(chain["records"]), 1)

    def testSPFCycleTerminates(self):
        """Mutually including records end the walk with a loop error"""
        resolver = FakeResolver(
            {
                "a.example": ["v=spf1 include:b.example -all"],
                "b.example": ["v=spf1 include:a.example -all"],
            }
        )
        results = mailposture.spf.check_spf("a.example", resolver=resolver)
        self.assertEqual(
            [r["domain"] for r in results["spfRecords"]], ["a.example", "b.example"]
        )
        self.assertFalse(results["validationResults"]["maxTenSpfRecords"]["isValid"])

    def testSPFRedirectLoop(self):
        resolver = FakeResolver({"example.com": ["v=spf1 redirect=example.com"]})
        chain = mailposture.spf.resolve_spf_chain("example.com", resolver=resolver)
        self.assertIsInstance(chain["error"], mailposture.spf.SPFRedirectLoop)

    def testSPFRepeatedIncludeIsACycle(self):
        """A record reached a second time by another path ends the walk"""
        resolver = FakeResolver(
            {
                "example.com": ["v=spf1 include:a.example.com include:b.example.com -all"],
                "a.example.com": ["v=spf1 include:c.example.com ~all"],
                "b.example.com": ["v=spf1 include:c.example.com ~all"],
                "c.example.com": ["v=spf1 ip4:192.0.2.1 ~all"],
            }
        )
        chain = mailposture.spf.resolve_spf_chain("example.com", resolver=resolver)
        self.assertIsInstance(chain["error"], mailposture.spf.SPFIncludeLoop)
        self.assertEqual(
            [r["domain"] for r in chain["records"]],
            ["example.com", "a.example.com", "c.example.com", "b.example.com"],
        )
        self.assertEqual(chain["lookups"], 5)
        validation = mailposture.spf.validate_spf_chain(chain)
        self.assertFalse(validation["maxTenSpfRecords"]["isValid"])

    def testSPFSameIncludeTwice(self):
        """Including the same domain twice in one record is a cycle"""
        resolver = FakeResolver(
            {
                "example.com": [
                    "v=spf1 include:x.example.com include:x.example.com -all"
                ],
                "x.example.com": ["v=spf1 ip4:192.0.2.1 -all"],
            }
        )
        chain = mailposture.spf.resolve_spf_chain("example.com", resolver=resolver)
        self.assertIsInstance(chain["error"], mailposture.spf.SPFIncludeLoop)
        self.assertEqual(chain["lookups"], 3)
        self.assertEqual(len(chain["records"]), 2)

    def testSPFTargetsAreNormalized(self):
        """A fully qualified include of the domain itself is caught as a loop"""
        resolver = FakeResolver(
            {"example.com": ["v=spf1 include:Example.COM. -all"]}
        )
        chain = mailposture.spf.resolve_spf_chain("example.com", resolver=resolver)
        self.assertIsInstance(chain["error"], mailposture.spf.SPFIncludeLoop)
        self.assertEqual(
            [(r["domain"], r["type"]) for r in chain["records"]],
            [("example.com", "initial")],
        )

    def testSPFTooManyDNSLookups(self):
        """More than ten DNS-querying mechanisms fail the lookup limit check"""
        record = "v=spf1 " + " ".join(
            f"a:h{i}.example.com" for i in range(15)
        ) + " -all"
        resolver = FakeResolver({"example.com": [record]})
        results = mailposture.spf.check_spf("example.com", resolver=resolver)
        max_ten = results["validationResults"]["maxTenSpfRecords"]
        self.assertFalse(max_ten["isValid"])
        self.assertIn("15/10 maximum DNS lookups", max_ten["errors"][0])
        self.assertLess(results["scoringResults"]["percentage"], 100)

    def testSPFTenDNSLookupsPass(self):
        record = "v=spf1 mx " + " ".join(
            f"a:h{i}.example.com" for i in range(9)
        ) + " -all"
        resolver = FakeResolver({"example.com": [record]})
        results = mailposture.spf.check_spf("example.com", resolver=resolver)
        self.assertTrue(results["validationResults"]["maxTenSpfRecords"]["isValid"])

    def testSPFMissingRecord(self):
        """A domain without SPF fails every SPF check"""
        resolver = FakeResolver({"example.com": ["google-site-verification=abc"]})
        results = mailposture.spf.check_spf("example.com", resolver=resolver)
        self.assertEqual(results["spfRecords"], [])
        self.assertEqual(results["scoringResults"]["totalScore"], 0)
        self.assertEqual(results["scoringResults"]["grade"], "F")
        self.assertFalse(results["validationResults"]["hasSpfRecord"]["isValid"])

    def testSPFDNSTimeout(self):
        """DNS timeouts become failed checks instead of exceptions"""
        resolver = FakeResolver(timeouts=["example.com"])
        results = mailposture.spf.check_spf(
            "example.com", resolver=resolver, timeout_retries=0
        )
        errors = results["validationResults"]["hasSpfRecord"]["errors"]
        self.assertTrue(errors[0].startswith("DNS timeout"))

    def testSPFIsIdempotent(self):
        resolver = FakeResolver(
            {
                "example.com": ["v=spf1 include:a.example.com ~all"],
                "a.example.com": ["v=spf1 ip4:192.0.2.1 -all"],
            }
        )
        first = mailposture.spf.check_spf("example.com", resolver=resolver)
        mailposture.utils.DNS_CACHE.clear()
        second = mailposture.spf.check_spf("example.com", resolver=resolver)
        self.assertEqual(first, second)

    def testCustomSPFRubric(self):
        """Rubrics can be replaced"""
        rubric = {
            "hasSpfRecord": {"name": "Present", "description": "", "max_score": 1}
        }
        resolver = FakeResolver({"example.com": ["v=spf1 -all"]})
        results = mailposture.spf.check_spf(
            "example.com", resolver=resolver, rubric=rubric
        )
        self.assertEqual(results["scoringResults"]["maxPossibleScore"], 1)
        self.assertEqual(results["scoringResults"]["percentage"], 100)

    def testParseDKIMRecord(self):
        parsed = mailposture.dkim.parse_dkim_record(
            f"v=DKIM1; k=rsa; h=sha1:sha256; t=y:s; n=notes; p={RSA_2048_KEY}"
        )
        self.assertEqual(parsed["version"], "DKIM1")
        self.assertEqual(parsed["algorithm"], "rsa-sha256")
        self.assertEqual(parsed["flags"], ["y", "s"])
        self.assertEqual(parsed["notes"], "notes")

        parsed = mailposture.dkim.parse_dkim_record(f"p={RSA_1024_KEY}")
        self.assertEqual(parsed["keyType"], "rsa")
        self.assertEqual(parsed["version"], "")

    def testDKIMSyntaxErrors(self):
        records = [
            f"v=DKIM2; p={RSA_2048_KEY}",
            f"k=rsa; v=DKIM1; p={RSA_2048_KEY}",
            "v=DKIM1; k=rsa",
            "v=DKIM1; p=not*base64",
            f"v=DKIM1; s=tlsrpt; p={RSA_2048_KEY}",
        ]
        for record in records:
            self.assertRaises(
                mailposture.dkim.DKIMSyntaxError,
                mailposture.dkim.parse_dkim_record,
                record,
            )

    def testEstimateDKIMKeyBits(self):
        estimate = mailposture.dkim.estimate_dkim_key_bits
        self.assertEqual(estimate(RSA_2048_KEY), 2048)
        self.assertEqual(estimate(RSA_1024_KEY), 1024)
        self.assertEqual(estimate("A" * 100), 512)
        self.assertEqual(estimate(ED25519_KEY, "ed25519"), 256)
        self.assertEqual(estimate(""), 0)

    def testDKIMRevokedKey(self):
        """An empty p tag is a revoked key that earns no key strength points"""
        resolver = FakeResolver({"default._domainkey.example.com": ["v=DKIM1; p="]})
        results = mailposture.dkim.check_dkim(
            "example.com", selectors=["default"], resolver=resolver
        )
        self.assertEqual(len(results["records"]), 1)
        item = score_item(results["score"], "Key Strength")
        self.assertEqual(item["score"], 0)
        self.assertFalse(item["passed"])
        self.assertIn("revoked key", item["details"])

    def testDKIMStrongKeys(self):
        resolver = FakeResolver(
            {
                "default._domainkey.example.com": [f"v=DKIM1; k=rsa; p={RSA_2048_KEY}"],
                "google._domainkey.example.com": [f"v=DKIM1; k=ed25519; p={ED25519_KEY}"],
            }
        )
        results = mailposture.dkim.check_dkim(
            "example.com", selectors=["default", "google", "missing"], resolver=resolver
        )
        self.assertEqual(
            [r["selector"] for r in results["records"]], ["default", "google"]
        )
        self.assertEqual(results["score"]["totalScore"], 100)
        self.assertEqual(results["score"]["grade"], "A")
        record = results["records"][0]
        self.assertEqual(record["rawRecord"], f"v=DKIM1; k=rsa; p={RSA_2048_KEY}")
        self.assertTrue(record["retrievedAt"].endswith("Z"))

    def testDKIMWeakestKeyIsScored(self):
        resolver = FakeResolver(
            {
                "default._domainkey.example.com": [f"v=DKIM1; p={RSA_2048_KEY}"],
                "selector1._domainkey.example.com": [f"v=DKIM1; t=y; p={RSA_1024_KEY}"],
            }
        )
        results = mailposture.dkim.check_dkim(
            "example.com", selectors=["default", "selector1"], resolver=resolver
        )
        self.assertEqual(score_item(results["score"], "Key Strength")["score"], 20)
        self.assertFalse(score_item(results["score"], "Production Mode")["passed"])

    def testDKIMMalformedRecordIsExcluded(self):
        resolver = FakeResolver(
            {"default._domainkey.example.com": ["v=DKIM1; k=rsa; p=not*base64"]}
        )
        results = mailposture.dkim.check_dkim(
            "example.com", selectors=["default"], resolver=resolver
        )
        self.assertEqual(results["records"], [])
        self.assertEqual(results["score"]["totalScore"], 0)
        self.assertIn("default", score_item(results["score"], "Key Strength")["details"])

    def testDKIMMissing(self):
        results = mailposture.dkim.check_dkim(
            "example.com", selectors=["default"], resolver=FakeResolver()
        )
        self.assertEqual(results["records"], [])
        self.assertEqual(results["score"]["grade"], "F")

    def testDMARCMixedFormatting(self):
        """DMARC records with extra spaces and mixed case are still valid"""
        examples = [
            "v=DMARC1;p=ReJect",
            "v = DMARC1;p=reject;",
            "v = DMARC1\t;\tp=reject\t;",
            "v = DMARC1\t;\tp\t\t\t=\t\t\treject\t;",
            "V=DMARC1;p=reject;",
        ]

        for example in examples:
            parsed_record = mailposture.dmarc.parse_dmarc_record(example, "")
            self.assertEqual(parsed_record["parsedData"]["policy"], "reject")

    def testParseDMARCRecord(self):
        parsed = mailposture.dmarc.parse_dmarc_record(
            "v=DMARC1; p=quarantine; sp=reject; pct=50; fo=1:d; "
            "rua=mailto:a@example.com,mailto:b@example.com; "
            "ruf=mailto:f@example.com",
            "example.com",
        )
        data = parsed["parsedData"]
        self.assertEqual(data["version"], "DMARC1")
        self.assertEqual(data["policy"], "quarantine")
        self.assertEqual(data["subdomainPolicy"], "reject")
        self.assertEqual(data["percentage"], 50)
        self.assertEqual(data["reportEmails"], ["a@example.com", "b@example.com"])
        self.assertEqual(data["forensicEmails"], ["f@example.com"])
        self.assertEqual(data["failureOptions"], ["1", "d"])
        self.assertEqual(parsed["tags"]["adkim"], "r")
        self.assertEqual(parsed["tags"]["ri"], 86400)

    def testInvalidDMARCURI(self):
        """An invalid DMARC report URI is reported as a warning"""

        dmarc_record = (
            "v=DMARC1; p=none; rua=reports@dmarc.cyber.dhs.gov,"
            "mailto:dmarcreports@usdoj.gov"
        )
        domain = "dea.gov"
        parsed = mailposture.dmarc.parse_dmarc_record(dmarc_record, domain)
        self.assertEqual(
            parsed["parsedData"]["reportEmails"], ["dmarcreports@usdoj.gov"]
        )
        self.assertIn(
            "reports@dmarc.cyber.dhs.gov is not a valid rua mailto URI.",
            parsed["warnings"],
        )

    def testDMARCSyntaxErrors(self):
        """Invalid policies and malformed records raise DMARCSyntaxError"""
        records = [
            "v=DMARC1; p=foo; rua=mailto:dmarc@example.com",
            "v=DMARC1; rua=mailto:dmarc@example.com; p=reject",
            "v=DMARC1; pct=50",
            "v=DMARC1; p=reject; pct=150",
            "v=DMARC1; p=reject; pct=half",
            "v=spf1 -all",
            "p=reject; v=DMARC1;",
        ]
        for record in records:
            self.assertRaises(
                mailposture.dmarc.DMARCSyntaxError,
                mailposture.dmarc.parse_dmarc_record,
                record,
                "example.com",
            )

    def testDMARCRejectPolicy(self):
        """A reject policy with aggregate reporting scores in the A range"""
        resolver = FakeResolver({"_dmarc.example.com": [GOOD_DMARC]})
        results = mailposture.dmarc.check_dmarc("example.com", resolver=resolver)
        score = results["score"]
        self.assertEqual(score_item(score, "Policy Strictness")["score"], 35)
        self.assertTrue(score_item(score, "Aggregate Reporting")["passed"])
        self.assertFalse(score_item(score, "Forensic Reporting")["passed"])
        self.assertEqual(score["totalScore"], 95)
        self.assertEqual(score["grade"], "A")
        self.assertEqual(results["record"]["rawRecord"], GOOD_DMARC)
        self.assertEqual(results["location"], "example.com")

    def testDMARCPartialCoverage(self):
        resolver = FakeResolver(
            {"_dmarc.example.com": ["v=DMARC1; p=quarantine; sp=none; pct=50"]}
        )
        score = mailposture.dmarc.check_dmarc("example.com", resolver=resolver)["score"]
        self.assertEqual(score_item(score, "Policy Strictness")["score"], 20)
        self.assertEqual(score_item(score, "Subdomain Policy")["score"], 0)
        self.assertEqual(score_item(score, "Policy Coverage")["score"], 7)

    def testDMARCBaseDomainFallback(self):
        """Subdomains without a DMARC record use the base domain's"""
        resolver = FakeResolver({"_dmarc.example.com": [GOOD_DMARC]})
        results = mailposture.dmarc.check_dmarc("mail.example.com", resolver=resolver)
        self.assertEqual(results["location"], "example.com")
        self.assertEqual(results["score"]["totalScore"], 95)

    def testMultipleDMARCRecords(self):
        resolver = FakeResolver(
            {"_dmarc.example.com": [GOOD_DMARC, "v=DMARC1; p=none"]}
        )
        self.assertRaises(
            mailposture.dmarc.MultipleDMARCRecords,
            mailposture.dmarc.query_dmarc_record,
            "example.com",
            resolver=resolver,
        )
        mailposture.utils.DNS_CACHE.clear()
        results = mailposture.dmarc.check_dmarc("example.com", resolver=resolver)
        self.assertFalse(score_item(results["score"], "Single DMARC Record")["passed"])
        self.assertEqual(results["record"]["rawRecord"], GOOD_DMARC)

    def testDMARCMissing(self):
        results = mailposture.dmarc.check_dmarc("example.com", resolver=FakeResolver())
        self.assertEqual(results["score"]["totalScore"], 0)
        self.assertEqual(results["record"]["rawRecord"], "")
        self.assertEqual(results["record"]["parsedData"]["policy"], "")

    def testCheckDomain(self):
        """The three protocol scores are combined into one report"""
        resolver = FakeResolver(
            {
                "example.com": ["v=spf1 -all"],
                "default._domainkey.example.com": [f"v=DKIM1; p={RSA_2048_KEY}"],
                "_dmarc.example.com": [GOOD_DMARC],
            }
        )
        report = mailposture.check_domain(
            "Example.com.", selectors=["default"], resolver=resolver
        )
        self.assertEqual(report["domain"], "example.com")
        self.assertEqual(report["scores"]["spf"]["totalScore"], 100)
        self.assertEqual(report["scores"]["dkim"]["totalScore"], 100)
        self.assertEqual(report["scores"]["dmarc"]["totalScore"], 95)
        self.assertEqual(report["totalScore"], 295)
        self.assertEqual(report["maxPossibleScore"], 300)
        self.assertEqual(report["percentage"], 98)
        self.assertEqual(report["grade"], "A")
        uuid.UUID(report["requestId"])
        self.assertIsInstance(report["responseTime"], int)
        self.assertTrue(report["timestamp"].endswith("Z"))
        self.assertNotIn("details", report)

    def testCheckDomainIsIdempotent(self):
        resolver = FakeResolver(
            {"example.com": ["v=spf1 ~all"], "_dmarc.example.com": [GOOD_DMARC]}
        )
        first = mailposture.check_domain(
            "example.com", selectors=["default"], resolver=resolver
        )
        mailposture.utils.DNS_CACHE.clear()
        second = mailposture.check_domain(
            "example.com", selectors=["default"], resolver=resolver
        )
        self.assertEqual(first["scores"], second["scores"])
        self.assertEqual(first["grade"], second["grade"])
        self.assertNotEqual(first["requestId"], second["requestId"])

    def testCheckDomainRejectsInvalidDomains(self):
        """Malformed domains are rejected before any DNS query"""
        resolver = FakeResolver()
        for domain in ["", "not a domain", "example"]:
            self.assertRaises(
                mailposture.utils.InvalidDomainInput,
                mailposture.check_domain,
                domain,
                resolver=resolver,
            )
        self.assertEqual(resolver.queries, [])

    def testCheckDomainDetails(self):
        resolver = FakeResolver({"example.com": ["v=spf1 -all"]})
        report = mailposture.check_domain(
            "example.com", selectors=["default"], resolver=resolver, include_details=True
        )
        self.assertEqual(sorted(report["details"].keys()), ["dkim", "dmarc", "spf"])
        self.assertEqual(report["details"]["spf"]["spfRecords"][0]["type"], "initial")

    def testPipelineTimeout(self):
        """A slow protocol fails on its own without holding up the others"""
        resolver = FakeResolver(
            {"example.com": ["v=spf1 -all"], "_dmarc.example.com": [GOOD_DMARC]},
            delay=1.0,
            delay_match="_domainkey",
        )
        started = time.monotonic()
        report = mailposture.check_domain(
            "example.com",
            selectors=["default"],
            resolver=resolver,
            pipeline_timeout=0.2,
        )
        self.assertLess(time.monotonic() - started, 0.9)
        dkim = report["scores"]["dkim"]
        self.assertEqual(dkim["totalScore"], 0)
        self.assertTrue(all(item["details"] == "timed out" for item in dkim["scoreItems"]))
        self.assertEqual(report["scores"]["spf"]["totalScore"], 100)
        self.assertEqual(report["scores"]["dmarc"]["totalScore"], 95)

    def testUnexpectedPipelineError(self):
        def broken():
            raise RuntimeError("boom")

        results = mailposture._run_pipelines(
            "example.com",
            {"spf": broken},
            {"spf": partial(mailposture.spf.spf_failure_results, "example.com")},
        )
        errors = results["spf"]["validationResults"]["hasSpfRecord"]["errors"]
        self.assertEqual(errors, ["Unexpected error: boom"])

    def testReportEnvelopes(self):
        resolver = FakeResolver(
            {
                "example.com": ["v=spf1 -all"],
                "default._domainkey.example.com": [f"v=DKIM1; p={RSA_2048_KEY}"],
                "_dmarc.example.com": [GOOD_DMARC],
            }
        )
        envelope = {"requestId", "responseTime", "timestamp"}
        report = mailposture.spf_report("example.com", resolver=resolver)
        self.assertEqual(
            set(report.keys()),
            {"domain", "spfRecords", "validationResults", "scoringResults"} | envelope,
        )
        report = mailposture.dkim_report(
            "example.com", selectors=["default"], resolver=resolver
        )
        self.assertEqual(set(report.keys()), {"domain", "records", "score"} | envelope)
        report = mailposture.dmarc_report("example.com", resolver=resolver)
        self.assertEqual(set(report.keys()), {"record", "score"} | envelope)

    def testCheckDomains(self):
        resolver = FakeResolver({"example.com": ["v=spf1 -all"]})
        results = mailposture.check_domains(
            ["example.com", "EXAMPLE.com.", "not a domain", "example.org"],
            selectors=["default"],
            resolver=resolver,
        )
        self.assertEqual([r["domain"] for r in results], ["example.com", "example.org"])

    def testResultsToCSV(self):
        resolver = FakeResolver({"example.com": ["v=spf1 -all"]})
        report = mailposture.check_domain(
            "example.com", selectors=["default"], resolver=resolver, include_details=True
        )
        rows = mailposture.results_to_csv_rows(report)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["spf_score"], 100)
        self.assertEqual(rows[0]["spf_records"], "v=spf1 -all")
        csv = mailposture.results_to_csv(report)
        lines = csv.strip().split("\n")
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[0].startswith("domain,grade,percentage"))
        self.assertTrue(lines[1].startswith("example.com,"))

    def testOutputToFile(self):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "results.json")
            mailposture.output_to_file(path, mailposture.results_to_json({"a": "é"}))
            with open(path, encoding="utf-8") as output_file:
                self.assertIn("é", output_file.read())

    def testReadDomainsFile(self):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "domains.txt")
            with open(path, "w") as domains_file:
                domains_file.write("Example.com.\nexample.org,extra\nlocalhost\n\n")
            self.assertEqual(
                mailposture._cli._read_domains_file(path),
                ["example.com", "example.org"],
            )

    def testResultCache(self):
        """Cached results are computed once and returned as copies"""
        cache = mailposture.cache.ResultCache(max_len=10, max_age_seconds=60)
        calls = []

        def compute():
            calls.append(1)
            return {"warnings": []}

        first = cache.get_or_compute(("example.com", "spf"), compute)
        first["warnings"].append("changed")
        second = cache.get_or_compute(("example.com", "spf"), compute)
        self.assertEqual(second, {"warnings": []})
        self.assertEqual(len(calls), 1)
        self.assertIn(("example.com", "spf"), cache)
        cache.clear()
        self.assertEqual(len(cache), 0)

    def testResultCacheSingleFlight(self):
        """Concurrent requests for the same key share one computation"""
        cache = mailposture.cache.ResultCache()
        calls = []

        def compute():
            calls.append(1)
            time.sleep(0.1)
            return {"grade": "A"}

        results = []
        threads = [
            threading.Thread(
                target=lambda: results.append(cache.get_or_compute("key", compute))
            )
            for _ in range(5)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(calls), 1)
        self.assertEqual(results, [{"grade": "A"}] * 5)

    def testCheckDomainUsesResultCache(self):
        resolver = FakeResolver({"example.com": ["v=spf1 -all"]})
        cache = mailposture.cache.ResultCache()
        mailposture.check_domain(
            "example.com", selectors=["default"], resolver=resolver, cache=cache
        )
        query_count = len(resolver.queries)
        mailposture.utils.DNS_CACHE.clear()
        mailposture.check_domain(
            "example.com", selectors=["default"], resolver=resolver, cache=cache
        )
        self.assertEqual(len(resolver.queries), query_count)


class APITest(unittest.TestCase):
    def setUp(self):
        mailposture.utils.DNS_CACHE.clear()
        resolver = FakeResolver(
            {
                "example.com": ["v=spf1 include:a.com include:b.com +all"],
                "default._domainkey.example.com": [f"v=DKIM1; p={RSA_2048_KEY}"],
                "_dmarc.example.com": [GOOD_DMARC],
            }
        )

        class Config(mailposture.config.TestingConfig):
            DNS_RESOLVER = resolver
            DKIM_SELECTORS = ["default"]

        self.client = mailposture.api.create_app(Config).test_client()

    def testSPFEndpoint(self):
        response = self.client.get("/api/spf?domain=example.com")
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body["domain"], "example.com")
        self.assertFalse(body["validationResults"]["unsafeAllMechanism"]["isValid"])
        self.assertIn("grade", body["scoringResults"])

    def testDKIMEndpointSelectors(self):
        response = self.client.get("/api/dkim?domain=example.com&selector=default,other")
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual([r["selector"] for r in body["records"]], ["default"])

    def testDMARCEndpoint(self):
        response = self.client.get("/api/dmarc?domain=example.com")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["score"]["totalScore"], 95)

    def testScoreEndpoint(self):
        response = self.client.get("/api/score?domain=example.com")
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body["maxPossibleScore"], 300)
        self.assertEqual(sorted(body["scores"].keys()), ["dkim", "dmarc", "spf"])

    def testBadDomains(self):
        """Missing or malformed domains are rejected with a 400"""
        for url in [
            "/api/spf",
            "/api/dkim?domain=",
            "/api/dmarc?domain=not%20a%20domain",
            "/api/score?domain=example",
        ]:
            response = self.client.get(url)
            self.assertEqual(response.status_code, 400)
            body = response.get_json()
            self.assertEqual(body["status"], "error")
            self.assertTrue(len(body["message"]) > 0)

    def testUnknownRoute(self):
        response = self.client.get("/api/unknown")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["status"], "error")

    def testCORSHeaders(self):
        response = self.client.get(
            "/api/spf?domain=example.com", headers={"Origin": "https://example.org"}
        )
        self.assertIn("Access-Control-Allow-Origin", response.headers)


if __name__ == "__main__":
    unittest.main(verbosity=2)
