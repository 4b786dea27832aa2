"""Tests for the threat scoring engine and the AI classifier."""

from __future__ import annotations

import hashlib
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from chatguard.detection.ai import AIThreatClassifier, _normalize_score
from chatguard.detection.engine import ThreatScoringEngine, attachment_sha256
from chatguard.detection.models import (
    IndicatorType,
    SignalSource,
    SuggestedAction,
    ThreatKind,
    ThreatSignal,
)
from chatguard.detection.reputation import LookupResult
from chatguard.resilience import DependencyGuard

MALWARE_MATCH = {
    "matches": [{"threatType": "MALWARE", "threat": {"url": "https://evil.example.com/x"}}]
}


def _vt_report(malicious: int, total: int) -> dict:
    stats = {"malicious": malicious, "undetected": total - malicious}
    return {"data": {"attributes": {"last_analysis_stats": stats}}}


@pytest.fixture
def safe_browsing():
    client = MagicMock()
    client.check_urls = AsyncMock(return_value=LookupResult.not_found())
    client.close = AsyncMock()
    return client


@pytest.fixture
def virustotal():
    client = MagicMock()
    client.lookup_file = AsyncMock(return_value=LookupResult.not_found())
    client.close = AsyncMock()
    return client


def _classifier_replying(model_output: str) -> AIThreatClassifier:
    """Classifier whose Ollama endpoint always returns *model_output*."""
    classifier = AIThreatClassifier(
        "http://ollama:11434", "llama3.2:3b", guard=DependencyGuard("ai_classifier")
    )
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"response": model_output})
    )
    classifier._client = httpx.AsyncClient(transport=transport)
    return classifier

class TestAttachmentHash:
    def test_prefers_provided_hash(self, make_attachment) -> None:
        att = make_attachment(sha256="A" * 64)
        assert attachment_sha256(att) == "a" * 64

    def test_hashes_bytes(self, make_attachment) -> None:
        att = make_attachment(sha256=None, data=b"payload")
        assert attachment_sha256(att) == hashlib.sha256(b"payload").hexdigest()

    def test_no_content(self, make_attachment) -> None:
        assert attachment_sha256(make_attachment(sha256=None)) is None


class TestThreatScoringEngine:
    @pytest.mark.asyncio
    async def test_clean_message(self, safe_browsing) -> None:
        engine = ThreatScoringEngine(safe_browsing=safe_browsing)
        analysis = await engine.analyze("good morning everyone")
        assert analysis.aggregate_score == 0
        assert analysis.signals == ()
        safe_browsing.check_urls.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malware_url_bans(self, safe_browsing) -> None:
        safe_browsing.check_urls.return_value = LookupResult.found(MALWARE_MATCH)
        engine = ThreatScoringEngine(safe_browsing=safe_browsing)

        analysis = await engine.analyze("check https://evil.example.com/x", message_id=1)

        safe_browsing.check_urls.assert_awaited_once_with(["https://evil.example.com/x"])
        assert analysis.aggregate_score == 95
        assert analysis.suggested_action is SuggestedAction.BAN_USER
        assert analysis.should_block
        assert analysis.iocs.urls == ("https://evil.example.com/x",)

    @pytest.mark.asyncio
    async def test_content_only_scenario(self) -> None:
        engine = ThreatScoringEngine()
        analysis = await engine.analyze("free nitro at https://bit.ly/abc")
        assert analysis.aggregate_score == 30
        assert len(analysis.signals) == 1
        assert analysis.suggested_action is SuggestedAction.NONE

    @pytest.mark.asyncio
    async def test_failed_lookup_contributes_nothing(self, safe_browsing) -> None:
        safe_browsing.check_urls.return_value = LookupResult.failed("timeout")
        engine = ThreatScoringEngine(safe_browsing=safe_browsing)
        analysis = await engine.analyze("see https://site.example.org")
        assert analysis.aggregate_score == 0

    @pytest.mark.asyncio
    async def test_raising_lookup_degrades_gracefully(self, safe_browsing) -> None:
        safe_browsing.check_urls.side_effect = RuntimeError("unexpected")
        engine = ThreatScoringEngine(safe_browsing=safe_browsing)
        analysis = await engine.analyze("free robux https://site.example.org")
        assert analysis.aggregate_score == 20

    @pytest.mark.asyncio
    async def test_attachments_scanned(self, virustotal, make_attachment) -> None:
        virustotal.lookup_file.side_effect = [
            LookupResult.found(_vt_report(malicious=60, total=70)),
            LookupResult.not_found(),
        ]
        engine = ThreatScoringEngine(virustotal=virustotal)
        attachments = [
            make_attachment(sha256="b" * 64, filename="bad.exe"),
            make_attachment(sha256="c" * 64, filename="fine.png"),
            make_attachment(sha256=None, filename="unhashable.bin"),
        ]

        analysis = await engine.analyze("", attachments)

        assert virustotal.lookup_file.await_count == 2
        assert len(analysis.signals) == 1
        signal = analysis.signals[0]
        assert signal.kind is ThreatKind.MALWARE_ATTACHMENT
        assert signal.indicator == "b" * 64
        assert analysis.suggested_action is SuggestedAction.DELETE_MESSAGE

    @pytest.mark.asyncio
    async def test_forensic_log_for_actionable_verdicts(self, safe_browsing) -> None:
        safe_browsing.check_urls.return_value = LookupResult.found(MALWARE_MATCH)
        engine = ThreatScoringEngine(safe_browsing=safe_browsing)
        with patch("chatguard.detection.engine.log_threat_event") as log_event:
            await engine.analyze("https://evil.example.com/x", message_id=42)
        log_event.assert_called_once()
        assert log_event.call_args.kwargs["message_id"] == 42

    @pytest.mark.asyncio
    async def test_no_forensic_log_for_clean(self) -> None:
        engine = ThreatScoringEngine()
        with patch("chatguard.detection.engine.log_threat_event") as log_event:
            await engine.analyze("hello")
        log_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_ai_signal_gets_prior_signals(self) -> None:
        ai = MagicMock()
        ai.classify = AsyncMock(
            return_value=ThreatSignal(
                kind=ThreatKind.AI_CLASSIFICATION,
                score=85.0,
                indicator="free nitro",
                indicator_type=IndicatorType.MESSAGE_CONTENT,
                source=SignalSource.AI_CLASSIFIER,
                description="Nitro scam",
            )
        )
        engine = ThreatScoringEngine(ai_classifier=ai)
        analysis = await engine.analyze("free nitro")
        prior = ai.classify.await_args.args[1]
        assert [s.kind for s in prior] == [ThreatKind.SPAM]
        assert analysis.aggregate_score == 85

    @pytest.mark.asyncio
    async def test_malformed_ai_reply_keeps_other_signals(self, safe_browsing) -> None:
        safe_browsing.check_urls.return_value = LookupResult.found(MALWARE_MATCH)
        classifier = _classifier_replying('["phishing"]')
        engine = ThreatScoringEngine(safe_browsing=safe_browsing, ai_classifier=classifier)

        analysis = await engine.analyze("check https://evil.example.com/x")

        assert analysis.aggregate_score == 95
        assert analysis.suggested_action is SuggestedAction.BAN_USER
        await classifier.close()

    @pytest.mark.asyncio
    async def test_raising_ai_classifier_keeps_other_signals(self, safe_browsing) -> None:
        safe_browsing.check_urls.return_value = LookupResult.found(MALWARE_MATCH)
        ai = MagicMock()
        ai.classify = AsyncMock(side_effect=AttributeError("broken"))
        engine = ThreatScoringEngine(safe_browsing=safe_browsing, ai_classifier=ai)

        analysis = await engine.analyze("check https://evil.example.com/x")

        assert analysis.aggregate_score == 95
        assert [s.source for s in analysis.signals] == [SignalSource.GOOGLE_SAFE_BROWSING]

    @pytest.mark.asyncio
    async def test_internal_error_returns_empty(self) -> None:
        engine = ThreatScoringEngine()
        with patch("chatguard.detection.engine.extract_iocs", side_effect=RuntimeError("bug")):
            analysis = await engine.analyze("anything")
        assert analysis.aggregate_score == 0
        assert analysis.suggested_action is SuggestedAction.NONE

    @pytest.mark.asyncio
    async def test_close(self, safe_browsing, virustotal) -> None:
        engine = ThreatScoringEngine(safe_browsing=safe_browsing, virustotal=virustotal)
        await engine.close()
        safe_browsing.close.assert_awaited_once()
        virustotal.close.assert_awaited_once()


class TestAIThreatClassifier:
    @pytest.fixture
    def classifier(self):
        return AIThreatClassifier(
            "http://ollama:11434", "llama3.2:3b", guard=DependencyGuard("ai_classifier")
        )

    @pytest.mark.asyncio
    async def test_threat(self, classifier) -> None:
        result = {
            "is_threat": True,
            "threat_score": 0.92,
            "categories": ["phishing"],
            "reasoning": "Fake nitro giveaway",
        }
        with patch.object(classifier, "_generate", return_value=result):
            signal = await classifier.classify("claim your nitro now", [])
        assert signal is not None
        assert signal.score == pytest.approx(92.0)
        assert signal.kind is ThreatKind.AI_CLASSIFICATION
        assert signal.description == "Fake nitro giveaway"
        assert signal.metadata["categories"] == ["phishing"]

    @pytest.mark.asyncio
    async def test_not_a_threat(self, classifier) -> None:
        with patch.object(classifier, "_generate", return_value={"is_threat": False}):
            assert await classifier.classify("hello", []) is None

    @pytest.mark.asyncio
    async def test_fails_open(self, classifier) -> None:
        with patch.object(classifier, "_generate", side_effect=ValueError("bad json")):
            assert await classifier.classify("hello", []) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("model_output", ['["phishing"]', '"threat"', "42", "null"])
    async def test_non_object_reply_fails_open(self, model_output: str) -> None:
        classifier = _classifier_replying(model_output)
        assert await classifier.classify("claim your nitro now", []) is None
        assert classifier.guard.breaker.snapshot().failure_count == 0
        await classifier.close()

    @pytest.mark.asyncio
    async def test_object_reply_over_http(self) -> None:
        classifier = _classifier_replying('{"is_threat": true, "threat_score": 0.8}')
        signal = await classifier.classify("claim your nitro now", [])
        assert signal is not None
        assert signal.score == pytest.approx(80.0)
        await classifier.close()

    @pytest.mark.asyncio
    async def test_prompt_includes_prior_signals(self, classifier) -> None:
        prior = ThreatSignal(
            kind=ThreatKind.SPAM,
            score=40,
            indicator="x",
            indicator_type=IndicatorType.MESSAGE_CONTENT,
            source=SignalSource.PATTERN_MATCHING,
            description="Suspicious content patterns detected",
        )
        with patch.object(classifier, "_generate", return_value={"is_threat": False}) as gen:
            await classifier.classify("message body", [prior])
        prompt = gen.await_args.args[0]
        assert "spam: Suspicious content patterns detected (score=40)" in prompt
        assert "message body" in prompt

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(0.5, 50.0), (1.0, 100.0), (75, 75.0), (250, 100.0), (-3, 0.0), ("x", 0.0), (None, 0.0)],
    )
    def test_normalize_score(self, raw, expected: float) -> None:
        assert _normalize_score(raw) == expected
