"""AI clients used by the content processor.

The provider is selected once by create_ai_client() and injected into the
processor. PlaceholderAIClient is deterministic and needs no credentials;
OpenAIClient wraps the OpenAI chat completions API.
"""

import base64
import json
import logging
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from openai import OpenAI
from pydantic import ValidationError as PydanticValidationError

from ..errors import ProcessingError, ValidationError
from ..models import AIConfig
from ..queue.models import (
    GenerateCardsInput,
    GeneratedCard,
    ImageDescription,
    KeyframeDescription,
    PageSummary,
)

logger = logging.getLogger(__name__)

STRATEGY_PROMPTS = {
    "labeling": "Create labeling questions where users identify parts or elements",
    "mcq": "Create multiple choice questions with 4 options",
    "hotspot": "Create hotspot questions where users click on specific areas",
}

CARD_SYSTEM_PROMPT = (
    "You are an expert educational content creator. Generate flashcards based on "
    "the provided content and requirements. Respond with pure JSON only."
)


def fallback_card(options: GenerateCardsInput) -> GeneratedCard:
    """Card returned when the provider's answer cannot be parsed."""
    return GeneratedCard(
        prompt="Review the content and answer the question.",
        answer="Please review the source material.",
        difficulty=options.difficulty,
        bloom_level=options.bloom_level,
    )


class AIClient(ABC):
    """Vision and card-generation operations."""

    @abstractmethod
    def describe_image(self, image_path: Path) -> ImageDescription:
        pass

    @abstractmethod
    def describe_keyframes(
        self, video_path: Path, keyframes: Sequence[Tuple[float, Path]]
    ) -> List[KeyframeDescription]:
        """One description per keyframe, in input order."""

    @abstractmethod
    def summarize_pdf_pages(self, pdf_path: Path, pages: Sequence[int]) -> List[PageSummary]:
        pass

    @abstractmethod
    def generate_cards(self, content: str, options: GenerateCardsInput) -> List[GeneratedCard]:
        pass


class PlaceholderAIClient(AIClient):
    """Deterministic stand-in used when no provider is configured."""

    def describe_image(self, image_path: Path) -> ImageDescription:
        return ImageDescription(
            description=f"Image {Path(image_path).name}",
            confidence=0.5,
            tags=["image"],
        )

    def describe_keyframes(self, video_path, keyframes):
        return [
            KeyframeDescription(
                timestamp=timestamp,
                description=f"Frame at {timestamp:g}s",
                confidence=0.5,
            )
            for timestamp, _ in keyframes
        ]

    def summarize_pdf_pages(self, pdf_path, pages):
        return [
            PageSummary(
                page_number=page,
                summary=f"Summary of page {page} content",
                key_points=[f"Key point 1 from page {page}", f"Key point 2 from page {page}"],
            )
            for page in pages
        ]

    def generate_cards(self, content, options):
        subject = content.splitlines()[0] if content else "the source material"
        card = GeneratedCard(
            prompt=f"What is shown in {subject}?",
            answer=subject,
            difficulty=options.difficulty,
            bloom_level=options.bloom_level,
            tags=[options.strategy],
        )
        if options.strategy == "mcq":
            card.options = [subject, "None of the above", "Not enough information", "Other"]
        return [card]


def build_card_prompt(content: str, options: GenerateCardsInput) -> str:
    lines = [
        f"Generate {options.strategy} flashcards based on this content:",
        "",
        content or "(no content provided)",
        "",
        "Requirements:",
        f"- Strategy: {STRATEGY_PROMPTS[options.strategy]}",
        f"- Difficulty: {options.difficulty}",
        f"- Bloom's Taxonomy Level: {options.bloom_level}",
    ]
    if options.context:
        lines.append(f"- Context: {options.context}")
    if options.learning_objective:
        lines.append(f"- Learning Objective: {options.learning_objective}")
    lines += [
        "",
        'Respond as JSON: {"cards": [{"prompt": str, "answer": str, "options": [str], '
        '"difficulty": str, "bloom_level": str, "tags": [str]}]}',
    ]
    return "\n".join(lines)


def parse_generated_cards(content: str, options: GenerateCardsInput) -> List[GeneratedCard]:
    """Parse the provider's JSON answer, falling back to a single review card."""
    try:
        parsed = json.loads(content)
        return [GeneratedCard.model_validate(card) for card in parsed.get("cards", [])]
    except (json.JSONDecodeError, AttributeError, TypeError, PydanticValidationError) as e:
        logger.error("Failed to parse generated cards: %s", e)
        return [fallback_card(options)]


def _data_url(path: Path) -> str:
    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    encoded = base64.b64encode(Path(path).read_bytes()).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


class OpenAIClient(AIClient):
    def __init__(self, config: AIConfig, client: Optional[OpenAI] = None):
        self.config = config
        self._client = client or OpenAI(api_key=config.openai_api_key)

    def _complete(self, messages, json_mode: bool = False) -> str:
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = self._client.chat.completions.create(
                model=self.config.openai_model,
                messages=messages,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                **kwargs,
            )
        except Exception as e:
            raise ProcessingError(f"OpenAI API error: {e}") from e
        return response.choices[0].message.content or ""

    def describe_image(self, image_path: Path) -> ImageDescription:
        logger.info("OpenAI describe_image called for %s", image_path)
        text = self._complete(
            [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "text",
                            "text": "Describe this image in detail, including any text, "
                            "objects, and key visual elements.",
                        },
                        {"type": "image_url", "image_url": {"url": _data_url(image_path)}},
                    ],
                }
            ]
        )
        return ImageDescription(description=text or "No description available", confidence=0.8)

    def describe_keyframes(self, video_path, keyframes):
        descriptions = []
        for timestamp, frame_path in keyframes:
            try:
                image = self.describe_image(frame_path)
                descriptions.append(
                    KeyframeDescription(
                        timestamp=timestamp,
                        description=image.description,
                        confidence=image.confidence,
                        objects=[obj.name for obj in image.objects],
                    )
                )
            except ProcessingError as e:
                logger.warning("Failed to describe keyframe at %ss: %s", timestamp, e)
                descriptions.append(
                    KeyframeDescription(timestamp=timestamp, description="Processing failed")
                )
        return descriptions

    def summarize_pdf_pages(self, pdf_path, pages):
        # Page text extraction is not wired up yet; summaries stay placeholders.
        return PlaceholderAIClient().summarize_pdf_pages(pdf_path, pages)

    def generate_cards(self, content, options):
        logger.info(
            "OpenAI generate_cards called (strategy=%s, difficulty=%s)",
            options.strategy, options.difficulty,
        )
        text = self._complete(
            [
                {"role": "system", "content": CARD_SYSTEM_PROMPT},
                {"role": "user", "content": build_card_prompt(content, options)},
            ],
            json_mode=True,
        )
        return parse_generated_cards(text, options)


def create_ai_client(config: Optional[AIConfig] = None) -> AIClient:
    """Select the AI client for the configured provider.

    Raises:
        ValidationError: If the provider needs credentials that are missing
    """
    config = config or AIConfig()
    if config.provider == "openai":
        if not config.openai_api_key:
            raise ValidationError("OPENAI_API_KEY environment variable is required")
        logger.info("Using OpenAI provider (model=%s)", config.openai_model)
        return OpenAIClient(config)
    return PlaceholderAIClient()
