"""Tests for the privacy tier rule, redaction and the audit trail."""

import json
import logging
import itertools

import pytest

from archivist.common.schemas import Chunk, PrivacyDecision, PrivacyTier
from archivist.ingestion.validator import find_pii
from archivist.retriever.privacy_filter import (
    PrivacyFilter,
    audit_logger,
    configure_audit_logging,
    decide,
    shutdown_audit_logging,
)

TIERS = [PrivacyTier.MINIMAL, PrivacyTier.SELECTIVE, PrivacyTier.HIGH, PrivacyTier.MAXIMUM]

SENSITIVE_TEXT = (
    "The council chair, reachable at chair@council.example.org or 555-867-5309, "
    "proposed moving the reserve multisig to new signers. The wallet "
    "0x52908400098527886E0F7030069857D2E4169EE7 currently holds the endowment and "
    "the plan requires three of five approvals before any transfer is executed."
)


def make_chunk(tier: PrivacyTier, partially_shareable: bool = False, text: str = SENSITIVE_TEXT) -> Chunk:
    return Chunk(
        id=f"chk_{tier.value}",
        document_id="doc_1",
        text=text,
        position=0,
        privacy_level=tier,
        partially_shareable=partially_shareable,
        session_id="s1",
    )


class TestTierRule:
    @pytest.mark.parametrize(
        "requester,chunk_tier,shareable",
        list(itertools.product(TIERS, TIERS, [False, True])),
    )
    def test_decision_matches_rule(self, requester, chunk_tier, shareable):
        decision = decide(requester, chunk_tier, shareable)
        if requester.rank >= chunk_tier.rank:
            assert decision == PrivacyDecision.ALLOW
        elif shareable and chunk_tier.rank == requester.rank + 1:
            assert decision == PrivacyDecision.REDACT
        else:
            assert decision == PrivacyDecision.DENY

    def test_string_tiers_accepted(self):
        assert decide("Selective", "high", True) == PrivacyDecision.REDACT

    def test_unknown_tier_rejected(self):
        with pytest.raises(ValueError, match="Unknown privacy tier"):
            decide("secret", "high", False)


class TestPrivacyFilter:
    def test_partially_shareable_high_chunk_for_selective_requester(self):
        privacy = PrivacyFilter(summary_length=100)
        outcome = privacy.filter(make_chunk(PrivacyTier.HIGH, partially_shareable=True), PrivacyTier.SELECTIVE)

        assert outcome.decision == PrivacyDecision.REDACT
        assert outcome.sanitized_text
        assert len(outcome.sanitized_text) <= 100
        assert find_pii(outcome.sanitized_text) == []
        assert "chair@council.example.org" not in outcome.sanitized_text
        assert "555-867-5309" not in outcome.sanitized_text

    def test_allow_has_no_sanitized_text(self):
        outcome = PrivacyFilter().filter(make_chunk(PrivacyTier.MINIMAL), PrivacyTier.HIGH)
        assert outcome.decision == PrivacyDecision.ALLOW
        assert outcome.sanitized_text is None
        assert outcome.visible

    def test_deny_two_tiers_above(self):
        outcome = PrivacyFilter().filter(make_chunk(PrivacyTier.MAXIMUM, partially_shareable=True), PrivacyTier.SELECTIVE)
        assert outcome.decision == PrivacyDecision.DENY
        assert outcome.sanitized_text is None
        assert not outcome.visible

    def test_sanitized_length_hides_original_length(self):
        privacy = PrivacyFilter(summary_length=100)
        short = privacy.sanitize(SENSITIVE_TEXT)
        longer = privacy.sanitize(SENSITIVE_TEXT * 5)
        assert len(short) <= 100 and len(longer) <= 100
        assert short == longer

    def test_counts_track_decisions(self):
        privacy = PrivacyFilter()
        privacy.filter(make_chunk(PrivacyTier.MINIMAL), PrivacyTier.MINIMAL)
        privacy.filter(make_chunk(PrivacyTier.MAXIMUM), PrivacyTier.MINIMAL)
        assert privacy.counts == {"allow": 1, "redact": 0, "deny": 1}


class TestAuditTrail:
    def test_every_decision_is_audited(self, caplog):
        with caplog.at_level(logging.INFO, logger="archivist.audit"):
            PrivacyFilter().filter(make_chunk(PrivacyTier.HIGH, partially_shareable=True), PrivacyTier.SELECTIVE)

        records = [r for r in caplog.records if r.name == "archivist.audit"]
        assert len(records) == 1
        assert records[0].audit == {
            "requester_tier": "selective",
            "chunk_id": "chk_high",
            "chunk_tier": "high",
            "decision": "redact",
        }

    def test_queue_listener_writes_json_lines(self, tmp_path):
        audit_file = tmp_path / "audit.jsonl"
        configure_audit_logging(audit_file)
        try:
            assert audit_logger.propagate is False
            PrivacyFilter().filter(make_chunk(PrivacyTier.MAXIMUM), PrivacyTier.MINIMAL)
        finally:
            shutdown_audit_logging()

        lines = audit_file.read_text().strip().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["decision"] == "deny"
        assert entry["chunk_id"] == "chk_maximum"
        assert "ts" in entry
        assert audit_logger.propagate is True
