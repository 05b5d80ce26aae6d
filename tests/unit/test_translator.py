# tests/unit/test_translator.py
# ------------------------------------------------------------
# Purpose: AWS Translate wrapper with a fake boto3 client.
# ------------------------------------------------------------

import pytest
from botocore.exceptions import ClientError

from src.clients.translator import Translator, translate_fields


def _throttled():
    return ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "TranslateText")


class FakeClient:
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []

    def translate_text(self, Text, SourceLanguageCode, TargetLanguageCode):
        self.calls.append((Text, SourceLanguageCode, TargetLanguageCode))
        if self.failures:
            self.failures -= 1
            raise _throttled()
        return {"TranslatedText": f"{TargetLanguageCode}:{Text}"}


def test_blank_text_is_never_sent():
    client = FakeClient()
    tr = Translator(client=client)
    assert tr.translate("   ", "en", "de") == ""
    assert tr.translate(None, "en", "de") == ""
    assert client.calls == []


def test_retries_with_doubling_backoff():
    sleeps = []
    tr = Translator(client=FakeClient(failures=2), initial_backoff_secs=0.5, sleep=sleeps.append)
    assert tr.translate("Gold", "en", "de") == "de:Gold"
    assert sleeps == [0.5, 1.0]


def test_gives_up_after_max_retries():
    tr = Translator(client=FakeClient(failures=5), max_retries=2, sleep=lambda s: None)
    with pytest.raises(ClientError):
        tr.translate("Gold", "en", "de")


def test_translate_fields_skips_empty_and_blanks_failures():
    tr = Translator(client=FakeClient(), sleep=lambda s: None)
    out = translate_fields(tr, {"title": "Gold", "description": "", "meta_title": None}, "en", "fr")
    assert out == {"title": "fr:Gold", "description": "", "meta_title": ""}

    broken = Translator(client=FakeClient(failures=10), max_retries=0, sleep=lambda s: None)
    assert translate_fields(broken, {"title": "Gold"}, "en", "fr") == {"title": ""}


def test_translate_fields_pauses_between_chunks():
    pauses = []
    tr = Translator(client=FakeClient())
    fields = {f"f{i}": f"text {i}" for i in range(5)}
    out = translate_fields(tr, fields, "en", "ja", max_concurrent=2, pause_secs=0.3, sleep=pauses.append)
    assert pauses == [0.3, 0.3]
    assert out["f4"] == "ja:text 4"
