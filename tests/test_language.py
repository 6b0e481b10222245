"""Tests for conversation language detection."""

import asyncio

import pytest

from conftest import FakeModelClient
from edge_relay.backends import BackendError
from edge_relay.language import (
    detect_by_keywords,
    detect_by_script,
    detect_heuristic,
    detect_language,
    detect_via_model,
    parse_classifier_reply,
)
from edge_relay.models import ChatMessage, RequestMeta


def _conversation(*texts: str):
    return [ChatMessage(role="user", content=t) for t in texts]


class SlowClassifier:
    """Classifier that never answers within the test timeout."""

    def __init__(self) -> None:
        self.calls = 0

    async def run(self, model, payload):
        self.calls += 1
        await asyncio.sleep(10)
        return {"response": "en"}


class TestHeuristics:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("こんにちは", "ja"),
            ("안녕하세요", "ko"),
            ("你好", "zh"),
            ("Привет, как дела?", "ru"),
            ("مرحبا", "ar"),
            ("שלום", "he"),
            ("Καλημέρα", "el"),
            ("नमस्ते", "hi"),
            ("สวัสดี", "th"),
        ],
    )
    def test_script_ranges(self, text: str, expected: str) -> None:
        assert detect_by_script(text) == expected

    def test_first_matching_range_wins(self) -> None:
        # Kanji plus kana is Japanese, not Chinese.
        assert detect_by_script("日本語のテキスト") == "ja"

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("hola, necesito ayuda", "es"),
            ("¿dónde está?", "es"),
            ("obrigado, tudo bem", "pt"),
            ("bonjour, merci beaucoup", "fr"),
            ("straße", "de"),
            ("hallo, danke schön", "de"),
            ("ciao, grazie mille", "it"),
            ("halo, terima kasih", "id"),
        ],
    )
    def test_latin_keywords_and_diacritics(self, text: str, expected: str) -> None:
        assert detect_by_keywords(text) == expected

    def test_single_keyword_is_not_enough(self) -> None:
        assert detect_by_keywords("I said hola") == ""

    def test_plain_english_undetermined(self) -> None:
        assert detect_heuristic("please summarize this document") == ""
        assert detect_heuristic("") == ""


class TestParseClassifierReply:
    @pytest.mark.parametrize(
        "reply,expected",
        [
            ({"response": "es"}, "es"),
            ({"result": {"response": " FR\n"}}, "fr"),
            ({"text": " de."}, "de"),
            ({"response": "und"}, "und"),
            ({"response": "???"}, "und"),
            ("pt", "pt"),
            ({}, "und"),
            (None, "und"),
        ],
    )
    def test_shapes(self, reply, expected: str) -> None:
        assert parse_classifier_reply(reply) == expected


@pytest.mark.asyncio
async def test_declared_language_wins_over_script() -> None:
    """A caller hint beats the Cyrillic script heuristic."""
    client = FakeModelClient()
    language = await detect_language(
        _conversation("Привет, как дела?"),
        RequestMeta(lang_iso2="es"),
        client,
        "lang-model",
    )
    assert language == "es"
    assert client.calls == []


@pytest.mark.asyncio
async def test_sentinel_hint_falls_through() -> None:
    language = await detect_language(
        _conversation("Привет"), RequestMeta(lang_iso2="auto")
    )
    assert language == "ru"


@pytest.mark.asyncio
async def test_heuristic_skips_classifier() -> None:
    client = FakeModelClient()
    language = await detect_language(
        _conversation("hola, necesito ayuda"), RequestMeta(), client, "lang-model"
    )
    assert language == "es"
    assert client.calls == []


@pytest.mark.asyncio
async def test_only_last_user_message_is_examined() -> None:
    messages = _conversation("Привет", "hola, buenos días")
    assert await detect_language(messages, RequestMeta()) == "es"


@pytest.mark.asyncio
async def test_classifier_fallback() -> None:
    client = FakeModelClient(replies={"lang-model": {"result": {"response": "nl"}}})
    language = await detect_language(
        _conversation("Kunt u mij helpen met deze vraag?"),
        RequestMeta(),
        client,
        "lang-model",
    )
    assert language == "nl"
    assert client.models_called == ["lang-model"]
    payload = client.calls[0][1]
    assert payload["messages"][-1]["content"].startswith("Text:\n")


@pytest.mark.asyncio
async def test_no_classifier_means_undetermined() -> None:
    language = await detect_language(
        _conversation("please summarize this document"), RequestMeta()
    )
    assert language == "und"


@pytest.mark.asyncio
async def test_short_text_skips_classifier() -> None:
    client = FakeModelClient(replies={"lang-model": {"response": "en"}})
    assert await detect_via_model(client, "lang-model", "ok", 1.0) == "und"
    assert client.calls == []


@pytest.mark.asyncio
async def test_classifier_failure_yields_undetermined() -> None:
    client = FakeModelClient(replies={"lang-model": BackendError("lang-model", "HTTP 500")})
    language = await detect_language(
        _conversation("please summarize this document"),
        RequestMeta(),
        client,
        "lang-model",
    )
    assert language == "und"


@pytest.mark.asyncio
async def test_classifier_timeout_yields_undetermined() -> None:
    classifier = SlowClassifier()
    language = await detect_language(
        _conversation("please summarize this document"),
        RequestMeta(),
        classifier,
        "lang-model",
        timeout=0.05,
    )
    assert language == "und"
    assert classifier.calls == 1
