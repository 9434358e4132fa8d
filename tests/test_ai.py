"""Tests for AI client selection and the OpenAI wrapper (no network)."""

import json
from types import SimpleNamespace

import pytest

from ingest_queue.errors import ProcessingError, ValidationError
from ingest_queue.models import AIConfig
from ingest_queue.processors import OpenAIClient, PlaceholderAIClient, create_ai_client
from ingest_queue.processors.ai import build_card_prompt, parse_generated_cards
from ingest_queue.queue.models import GenerateCardsInput


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_openai(content=None, error=None):
    completions = FakeCompletions(content, error)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def test_create_ai_client_defaults_to_placeholder():
    assert isinstance(create_ai_client(AIConfig()), PlaceholderAIClient)


def test_create_ai_client_openai_requires_key():
    with pytest.raises(ValidationError, match="OPENAI_API_KEY"):
        create_ai_client(AIConfig(provider="openai"))


def test_create_ai_client_openai():
    client = create_ai_client(AIConfig(provider="openai", openai_api_key="sk-test"))
    assert isinstance(client, OpenAIClient)


def test_placeholder_mcq_card_has_four_options():
    cards = PlaceholderAIClient().generate_cards("image: a heart", GenerateCardsInput(deck_id=1))
    assert len(cards) == 1
    assert len(cards[0].options) == 4


def test_openai_describe_image_sends_data_url(tmp_path):
    image = tmp_path / "cell.png"
    image.write_bytes(b"\x89PNG")
    client, completions = fake_openai("A cell diagram")

    description = OpenAIClient(AIConfig(), client=client).describe_image(image)

    assert description.description == "A cell diagram"
    content = completions.calls[0]["messages"][0]["content"]
    assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")


def test_openai_errors_become_processing_errors(tmp_path):
    image = tmp_path / "a.jpg"
    image.write_bytes(b"jpeg")
    client, _ = fake_openai(error=RuntimeError("quota exceeded"))

    with pytest.raises(ProcessingError, match="quota exceeded"):
        OpenAIClient(AIConfig(), client=client).describe_image(image)


def test_openai_keyframe_failure_is_per_frame(tmp_path):
    frame = tmp_path / "f.jpg"
    frame.write_bytes(b"jpeg")
    client, _ = fake_openai(error=RuntimeError("timeout"))

    descriptions = OpenAIClient(AIConfig(), client=client).describe_keyframes(
        tmp_path / "v.mp4", [(0.0, frame), (10.0, frame)]
    )

    assert [d.description for d in descriptions] == ["Processing failed", "Processing failed"]


def test_openai_generate_cards_uses_json_mode():
    answer = {"cards": [{"prompt": "Name the organelle", "answer": "Nucleus", "options": []}]}
    client, completions = fake_openai(json.dumps(answer))
    options = GenerateCardsInput(deck_id=1, strategy="labeling")

    cards = OpenAIClient(AIConfig(), client=client).generate_cards("image: cell", options)

    assert [c.answer for c in cards] == ["Nucleus"]
    assert completions.calls[0]["response_format"] == {"type": "json_object"}


def test_parse_generated_cards_falls_back():
    options = GenerateCardsInput(deck_id=1, difficulty="beginner")
    cards = parse_generated_cards("not json", options)
    assert len(cards) == 1
    assert cards[0].difficulty == "beginner"


def test_build_card_prompt_includes_optional_context():
    options = GenerateCardsInput(deck_id=1, context="Biology 101", learning_objective="Cells")
    prompt = build_card_prompt("image: cell", options)
    assert "- Context: Biology 101" in prompt
    assert "- Learning Objective: Cells" in prompt
    assert "multiple choice" in prompt
