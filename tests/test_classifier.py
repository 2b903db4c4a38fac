"""
Tests for the open-signal classifier (campreg/watch/classifier.py)
"""
import pytest
import httpx

from campreg.common.config import PollingConfig
from campreg.watch.classifier import (
    OpenSignalClassifier,
    ProbeError,
    extract_stated_open_time,
)

URL = "https://camp.example.com/register"


def make_classifier(handler, **overrides):
    config = PollingConfig(retry_delay_ms=1, requests_per_second=100.0, **overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenSignalClassifier(config, client=client)


class TestClassify:
    @pytest.fixture()
    def classifier(self):
        return OpenSignalClassifier(PollingConfig())

    def test_positive_only_is_open(self, classifier):
        verdict = classifier.classify("<h1>Register Now</h1> for Summer Camp")
        assert verdict.is_open is True
        assert "register now" in verdict.positive

    def test_negative_overrides_positive(self, classifier):
        verdict = classifier.classify("<b>Register Now</b> ... Registration Closed")
        assert verdict.is_open is False
        assert verdict.positive
        assert "registration closed" in verdict.negative

    def test_no_signals_is_closed(self, classifier):
        assert classifier.classify("Welcome to camp").is_open is False

    def test_stated_open_time_is_evidence_only(self, classifier):
        verdict = classifier.classify("Registration opens on March 1, 2027 at 9:00 AM", "America/Chicago")
        assert verdict.is_open is False
        assert verdict.stated_open_at is not None
        assert (verdict.stated_open_at.year, verdict.stated_open_at.month, verdict.stated_open_at.hour) == (2027, 3, 9)


def test_extract_without_statement():
    assert extract_stated_open_time("Register now!") == (None, None)


class TestProbe:
    @pytest.mark.asyncio
    async def test_probe_classifies_body(self):
        classifier = make_classifier(lambda request: httpx.Response(200, text="Enroll now!"))
        verdict = await classifier.probe(URL)
        assert verdict.is_open is True
        assert verdict.status_code == 200

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, text="Sold out")

        classifier = make_classifier(handler, max_attempts=3)
        verdict = await classifier.probe(URL)
        assert len(calls) == 2
        assert verdict.is_open is False

    @pytest.mark.asyncio
    async def test_client_error_fails_immediately(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404)

        classifier = make_classifier(handler, max_attempts=3)
        with pytest.raises(ProbeError) as exc_info:
            await classifier.probe(URL)
        assert exc_info.value.status_code == 404
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_network_error_raises_after_attempts(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("boom", request=request)

        classifier = make_classifier(handler, max_attempts=2)
        with pytest.raises(ProbeError, match="Fetch failed"):
            await classifier.probe(URL)
        assert len(calls) == 2
