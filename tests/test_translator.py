import json
from types import SimpleNamespace

import pytest

from retold.batching import RetryPolicy, translate_units_batched
from retold.errors import ResponseParseError, TranslationError
from retold.translator import (
    AuditTrail,
    DummyTranslator,
    MissingApiKeyError,
    OpenAIBackend,
    RateLimiter,
    Translator,
    TranslatorConfig,
    build_batch_prompt,
    build_translation_prompt,
    failed_index_sentinel,
    parse_batch_response,
)


class FakeBackend:
    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def complete(self, system_instruction, user_prompt, max_output_tokens=None):
        self.calls.append({"system": system_instruction, "prompt": user_prompt, "max": max_output_tokens})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def _unit(i, paragraph=None):
    return {
        "sid": f"ch1_p1_s{i}",
        "sentence": f"Sentence number {i}.",
        "context": {"paragraph": paragraph or f"Paragraph {i}.", "prev_sentence": None, "next_sentence": None},
        "chapter_id": "ch1",
        "paragraph_id": "ch1_p1",
    }


def test_sentence_prompt_includes_neighbours_when_present():
    ctx = {"paragraph": "A b. C d. E f.", "prev_sentence": "A b.", "next_sentence": "E f."}
    prompt = build_translation_prompt("C d.", ctx, "Frankenstein")
    assert '"Frankenstein"' in prompt
    assert 'CONTEXT - Full Paragraph:\n"A b. C d. E f."' in prompt
    assert 'CONTEXT - Previous Sentence:\n"A b."' in prompt
    assert 'SENTENCE TO TRANSLATE:\n"C d."' in prompt
    assert 'CONTEXT - Next Sentence:\n"E f."' in prompt
    assert "Provide ONLY the modern English translation" in prompt


def test_sentence_prompt_omits_missing_neighbours():
    ctx = {"paragraph": "Alone.", "prev_sentence": None, "next_sentence": None}
    prompt = build_translation_prompt("Alone.", ctx, "Emma")
    assert "Previous Sentence" not in prompt
    assert "Next Sentence" not in prompt


def test_batch_prompt_numbers_sentences_and_truncates_context():
    units = [_unit(i, paragraph=f"PARA{i}:" + "x" * 300) for i in range(1, 6)]
    prompt = build_batch_prompt(units, "Emma")

    for i in range(1, 6):
        assert f'{i}. "Sentence number {i}."' in prompt
    for i in range(1, 4):
        expected = (f"PARA{i}:" + "x" * 300)[:200]
        assert f'- "{expected}..."' in prompt
        assert f"PARA{i}:" + "x" * 200 not in prompt
    assert "PARA4" not in prompt
    assert "PARA5" not in prompt
    assert '{"1": "...", "2": "..."}' in prompt


def test_parse_batch_response_strict():
    result = parse_batch_response('{"1": "one", "2": "two"}')
    assert result.ok
    assert result.data == {"1": "one", "2": "two"}


def test_parse_batch_response_extracts_embedded_object():
    text = 'Sure! Here you go:\n```json\n{"1": "a } b", "2": "say \\"hi\\" {x}"}\n```\nEnjoy.'
    result = parse_batch_response(text)
    assert result.ok
    assert result.data == {"1": "a } b", "2": 'say "hi" {x}'}


@pytest.mark.parametrize("text", ["not json at all", '["a", "b"]', '{"1": "unterminated', ""])
def test_parse_batch_response_failure_is_tagged(text):
    result = parse_batch_response(text)
    assert not result.ok
    assert result.data is None
    assert result.error


def test_translate_batch_fills_missing_index_with_sentinel():
    units = [_unit(i) for i in range(1, 6)]
    reply = json.dumps({"1": "One.", "2": "Two.", "4": "Four.", "5": "Five."})
    translator = Translator(FakeBackend(reply), cfg=TranslatorConfig(batch_max_output_tokens=1234))

    out = translator.translate_batch(units, "Emma")

    assert out == {
        "ch1_p1_s1": "One.",
        "ch1_p1_s2": "Two.",
        "ch1_p1_s3": failed_index_sentinel(3),
        "ch1_p1_s4": "Four.",
        "ch1_p1_s5": "Five.",
    }
    assert out["ch1_p1_s3"] == "[Translation failed for index 3]"
    assert translator.backend.calls[0]["max"] == 1234


def test_translate_batch_treats_non_string_values_as_missing():
    units = [_unit(i) for i in range(1, 4)]
    reply = json.dumps({"1": {"a": 1}, "2": "Two.", "3": ["x"]})
    out = Translator(FakeBackend(reply)).translate_batch(units, "Emma")
    assert out == {
        "ch1_p1_s1": "[Translation failed for index 1]",
        "ch1_p1_s2": "Two.",
        "ch1_p1_s3": "[Translation failed for index 3]",
    }


def test_translate_batch_unparseable_raises_parse_error():
    translator = Translator(FakeBackend("I cannot help with that."))
    with pytest.raises(ResponseParseError):
        translator.translate_batch([_unit(1)], "Emma")


def test_translate_batch_records_prompt_hash():
    audit = AuditTrail()
    translator = Translator(FakeBackend('{"1": "x"}'), audit=audit)
    translator.translate_batch([_unit(1)], "Emma")
    records = audit.as_list()
    assert records[0]["kind"] == "batch_prompt"
    assert records[0]["sids"] == ["ch1_p1_s1"]
    assert len(records[0]["prompt_hash"]) == 40


def test_translate_one_wraps_transport_errors():
    translator = Translator(FakeBackend(ConnectionError("socket closed")))
    with pytest.raises(TranslationError) as excinfo:
        translator.translate_one("Hi.", {"paragraph": "Hi."}, "Emma")
    assert "socket closed" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, ConnectionError)


def test_translate_one_strips_fences_and_wrapping_quotes():
    translator = Translator(FakeBackend('```\n"You will be glad to hear."\n```'))
    out = translator.translate_one("You will rejoice to hear.", {"paragraph": "x"}, "Frankenstein")
    assert out == "You will be glad to hear."


def test_translate_one_keeps_inner_quotes():
    translator = Translator(FakeBackend('He said "go."'))
    assert translator.translate_one("x", {"paragraph": "x"}, "B") == 'He said "go."'


def test_translate_one_rejects_empty_completion():
    translator = Translator(FakeBackend("   "))
    with pytest.raises(TranslationError):
        translator.translate_one("x", {"paragraph": "x"}, "B")


def test_dummy_translator_echoes_source():
    units = [_unit(1), _unit(2)]
    out = DummyTranslator().translate_batch(units, "B")
    assert out == {"ch1_p1_s1": "Sentence number 1.", "ch1_p1_s2": "Sentence number 2."}


def test_rate_limiter_keeps_minimum_interval():
    now = [100.0]
    sleeps = []

    def fake_sleep(seconds):
        sleeps.append(seconds)
        now[0] += seconds

    limiter = RateLimiter(0.5, sleep=fake_sleep, clock=lambda: now[0])
    limiter.wait()
    now[0] += 0.2
    limiter.wait()
    now[0] += 1.0
    limiter.wait()

    assert sleeps == [pytest.approx(0.3)]


def test_rate_limiter_disabled():
    sleeps = []
    limiter = RateLimiter(0, sleep=sleeps.append)
    limiter.wait()
    limiter.wait()
    assert sleeps == []


class _FakeCompletions:
    def __init__(self, owner):
        self.owner = owner

    def create(self, **kwargs):
        self.owner.requests.append(kwargs)
        reply = self.owner.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        message = SimpleNamespace(content=reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeOpenAI:
    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.requests = []
        self.replies = []
        self.chat = SimpleNamespace(completions=_FakeCompletions(self))
        FakeOpenAI.instances.append(self)


@pytest.fixture
def fake_openai(monkeypatch):
    FakeOpenAI.instances = []
    monkeypatch.setattr("openai.OpenAI", FakeOpenAI)
    return FakeOpenAI


def test_openai_backend_builds_client_with_timeout_and_no_sdk_retries(fake_openai):
    OpenAIBackend(api_key="sk-test", cfg=TranslatorConfig(timeout=12.5))
    client = fake_openai.instances[0]
    assert client.kwargs == {"api_key": "sk-test", "timeout": 12.5, "max_retries": 0}


def test_openai_backend_request_shape_without_temperature(fake_openai):
    backend = OpenAIBackend(api_key="sk-test", cfg=TranslatorConfig(model="gpt-5-mini", max_output_tokens=700))
    client = fake_openai.instances[0]
    client.replies = ["Modern text."]

    assert backend.complete("system", "user") == "Modern text."
    request = client.requests[0]
    assert request["model"] == "gpt-5-mini"
    assert request["max_completion_tokens"] == 700
    assert "temperature" not in request
    assert request["messages"] == [
        {"role": "system", "content": "system"},
        {"role": "user", "content": "user"},
    ]


def test_openai_backend_sends_configured_temperature_and_batch_cap(fake_openai):
    backend = OpenAIBackend(api_key="sk-test", cfg=TranslatorConfig(temperature=0.3))
    client = fake_openai.instances[0]
    client.replies = ['{"1": "x"}']

    backend.complete("system", "user", max_output_tokens=6000)
    assert client.requests[0]["temperature"] == 0.3
    assert client.requests[0]["max_completion_tokens"] == 6000


def test_openai_backend_missing_key(monkeypatch, fake_openai):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(MissingApiKeyError):
        OpenAIBackend()
    assert fake_openai.instances == []


def test_openai_backend_reads_key_from_env(monkeypatch, fake_openai):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    OpenAIBackend()
    assert fake_openai.instances[0].kwargs["api_key"] == "sk-env"


def test_client_timeout_is_a_retryable_translation_error(fake_openai):
    backend = OpenAIBackend(api_key="sk-test")
    client = fake_openai.instances[0]
    client.replies = [TimeoutError("Request timed out."), '{"1": "Modern."}']

    units = [_unit(1)]
    out = translate_units_batched(
        units, Translator(backend), "Emma", retry_policy=RetryPolicy(base_delay=0.0), sleep=lambda s: None
    )

    assert out == {"ch1_p1_s1": "Modern."}
    assert len(client.requests) == 2
