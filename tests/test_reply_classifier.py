import pytest

from kahani.services.reply_classifier import Readiness, classify_readiness, normalize_reply


class TestNormalizeReply:
    def test_lowercases_and_strips(self):
        assert normalize_reply("  Yes, Let's Begin  ") == "yes, let's begin"

    def test_curly_quotes_become_straight(self):
        assert normalize_reply("Yes, let’s begin") == "yes, let's begin"

    def test_none_is_empty(self):
        assert normalize_reply(None) == ""


class TestButtons:
    @pytest.mark.parametrize("text", ["Yes, let's begin", "Yes, let’s begin", "YES LETS BEGIN", "हाँ, शुरू करते हैं"])
    def test_yes_buttons(self, text):
        assert classify_readiness(text) is Readiness.YES

    @pytest.mark.parametrize("text", ["Maybe later", "maybe later ", "थोड़ी देर में"])
    def test_maybe_buttons(self, text):
        assert classify_readiness(text) is Readiness.MAYBE


class TestKeywords:
    @pytest.mark.parametrize("text", ["ok", "Sure, go ahead", "I am ready now", "ठीक है"])
    def test_yes_keywords(self, text):
        assert classify_readiness(text) is Readiness.YES

    @pytest.mark.parametrize("text", ["not now, later", "please wait", "बाद में"])
    def test_maybe_keywords(self, text):
        assert classify_readiness(text) is Readiness.MAYBE

    def test_yes_wins_over_maybe(self):
        assert classify_readiness("ok but later") is Readiness.YES

    @pytest.mark.parametrize("text", ["", "   ", "who is this?", "🙏"])
    def test_unknown(self, text):
        assert classify_readiness(text) is Readiness.UNKNOWN
