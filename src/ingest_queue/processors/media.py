"""Media content processor.

Turns an uploaded image, video or PDF into a media asset plus a draft card
in the owner's auto-generated deck, and turns media assets into active AI
generated cards. Media analysis is placeholder logic: fixed metadata,
evenly spaced keyframes and page renders written as marker files to the
derived bucket.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import ProcessingError
from ..models import ProcessingConfig
from ..queue.backends import RecordStore
from ..queue.models import (
    GenerateCardsInput,
    GenerateCardsOutput,
    ImageIngestOutput,
    IngestFileInput,
    Job,
    Keyframe,
    PdfIngestOutput,
    PdfPage,
    VideoIngestOutput,
)
from ..storage import LocalStorage
from .ai import AIClient
from .base import ContentProcessor

logger = logging.getLogger(__name__)

DRAFT_ANSWER = "Draft - needs completion"

# Placeholder metadata until real probing is wired in
IMAGE_METADATA = {"width": 1920, "height": 1080}
VIDEO_METADATA = {"duration": 120, "width": 1920, "height": 1080}
PDF_PAGE_COUNT = 10


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _file_format(path: Path, mime_type: str) -> str:
    suffix = path.suffix.lstrip(".").lower()
    return suffix or mime_type.split("/")[-1]


class MediaContentProcessor(ContentProcessor):
    def __init__(
        self,
        records: RecordStore,
        ai_client: AIClient,
        storage: LocalStorage,
        config: Optional[ProcessingConfig] = None,
    ):
        self.records = records
        self.ai = ai_client
        self.storage = storage
        self.config = config or ProcessingConfig()

    def _source(self, payload: IngestFileInput) -> Path:
        return self.storage.require("ingest", payload.storage_path)

    def _metadata(self, source: Path, payload: IngestFileInput, **extra: Any) -> Dict[str, Any]:
        metadata = dict(extra)
        metadata["format"] = _file_format(source, payload.mime_type)
        metadata["size"] = payload.file_size or source.stat().st_size
        return metadata

    def _create_draft_card(
        self, owner: str, prompt: str, media_asset_id: int, title: str, bloom_level: str
    ) -> int:
        """Inactive card in the owner's default deck, linked to its media."""
        deck_id = self.records.get_or_create_default_deck(owner)
        card_id = self.records.create_card(
            deck_id,
            prompt,
            DRAFT_ANSWER,
            is_active=False,
            title=title,
            bloom_level=bloom_level,
            difficulty="intermediate",
            language_code=self.config.language_code,
        )
        self.records.link_card_media(card_id, media_asset_id, role="primary")
        return card_id

    def ingest_image(self, job: Job, payload: IngestFileInput) -> ImageIngestOutput:
        logger.info("Processing image job %s: %s", job.id, payload.storage_path)
        source = self._source(payload)
        owner = payload.resolve_owner(job.created_by)

        thumbnail_path = self.storage.copy_derived(source, "thumbnails")
        description = self.ai.describe_image(source)
        metadata = self._metadata(source, payload, **IMAGE_METADATA)

        media_asset_id = self.records.create_media_asset(
            "image",
            payload.storage_path,
            payload.mime_type,
            owner,
            width_px=metadata["width"],
            height_px=metadata["height"],
            alt_text=description.description,
            source_url=payload.storage_path,
        )
        card_id = self._create_draft_card(
            owner,
            f"Label the key parts of this image: {description.description}",
            media_asset_id,
            title=f"Image Analysis - {_today()}",
            bloom_level="analyze",
        )
        return ImageIngestOutput(
            media_asset_id=media_asset_id,
            card_id=card_id,
            description=description,
            thumbnail_path=thumbnail_path,
            metadata=metadata,
        )

    def _extract_keyframes(self) -> List[Any]:
        frames = []
        interval = self.config.keyframe_interval_s
        for i in range(self.config.max_keyframes):
            timestamp = float(i * interval)
            if timestamp > VIDEO_METADATA["duration"]:
                break
            object_path = self.storage.store_derived(
                "keyframes", f"-{int(timestamp)}s.jpg", f"Frame at {timestamp:g}s".encode()
            )
            frames.append((timestamp, object_path))
        return frames

    def ingest_video(self, job: Job, payload: IngestFileInput) -> VideoIngestOutput:
        logger.info("Processing video job %s: %s", job.id, payload.storage_path)
        source = self._source(payload)
        owner = payload.resolve_owner(job.created_by)

        frames = self._extract_keyframes()
        descriptions = self.ai.describe_keyframes(
            source,
            [(timestamp, self.storage.resolve("derived", path)) for timestamp, path in frames],
        )
        keyframes = [
            Keyframe(timestamp=timestamp, image_path=path, description=description)
            for (timestamp, path), description in zip(frames, descriptions)
        ]
        metadata = self._metadata(source, payload, **VIDEO_METADATA)

        # Captions and transcripts need a speech-to-text provider; none yet
        captions_path = None
        transcript_path = None

        media_asset_id = self.records.create_media_asset(
            "video",
            payload.storage_path,
            payload.mime_type,
            owner,
            width_px=metadata["width"],
            height_px=metadata["height"],
            duration_seconds=metadata["duration"],
            captions_path=captions_path,
            transcript_path=transcript_path,
            source_url=payload.storage_path,
        )
        moments = "; ".join(k.description.description for k in keyframes)
        card_id = self._create_draft_card(
            owner,
            f"What's the next step in this video sequence? Key moments: {moments}",
            media_asset_id,
            title=f"Video Analysis - {_today()}",
            bloom_level="understand",
        )
        return VideoIngestOutput(
            media_asset_id=media_asset_id,
            card_id=card_id,
            keyframes=keyframes,
            captions_path=captions_path,
            transcript_path=transcript_path,
            metadata=metadata,
        )

    def ingest_pdf(self, job: Job, payload: IngestFileInput) -> PdfIngestOutput:
        logger.info("Processing PDF job %s: %s", job.id, payload.storage_path)
        source = self._source(payload)
        owner = payload.resolve_owner(job.created_by)

        page_numbers = list(range(1, min(self.config.max_pdf_pages, PDF_PAGE_COUNT) + 1))
        summaries = {s.page_number: s for s in self.ai.summarize_pdf_pages(source, page_numbers)}

        pages: List[PdfPage] = []
        media_assets: List[int] = []
        cards: List[int] = []
        for number in page_numbers:
            image_path = self.storage.store_derived(
                "pdf-pages", f"-page-{number}.jpg", f"PDF Page {number}".encode()
            )
            summary = summaries.get(number)
            page = PdfPage(
                page_number=number,
                image_path=image_path,
                text_content=f"Text content from page {number}",
                summary=summary.summary if summary else None,
            )
            pages.append(page)

            media_asset_id = self.records.create_media_asset(
                "image",
                image_path,
                "image/jpeg",
                owner,
                alt_text=f"PDF page {number} content",
                source_url=payload.storage_path,
            )
            media_assets.append(media_asset_id)
            cards.append(
                self._create_draft_card(
                    owner,
                    f"Analyze the content on page {number}: {page.summary}",
                    media_asset_id,
                    title=f"PDF Page {number}",
                    bloom_level="analyze",
                )
            )

        return PdfIngestOutput(
            media_assets=media_assets,
            cards=cards,
            pages=pages,
            metadata=self._metadata(source, payload, page_count=PDF_PAGE_COUNT),
        )

    def generate_cards(self, job: Job, payload: GenerateCardsInput) -> GenerateCardsOutput:
        logger.info("Processing card generation job %s for deck %s", job.id, payload.deck_id)
        if self.records.get_deck(payload.deck_id) is None:
            raise ProcessingError(f"Deck not found: {payload.deck_id}")

        assets = self.records.get_media_assets(payload.media_asset_ids)
        found = {asset["id"] for asset in assets}
        missing = [i for i in payload.media_asset_ids if i not in found]
        if missing:
            raise ProcessingError(f"Media assets not found: {missing}")

        content = "\n\n".join(
            f"{asset['type']}: {asset.get('alt_text') or 'No description'}" for asset in assets
        )
        generated = self.ai.generate_cards(content, payload)

        created: List[int] = []
        for card in generated:
            card_id = self.records.create_card(
                payload.deck_id,
                card.prompt,
                card.answer,
                is_active=True,
                title=f"AI Generated Card - {_today()}",
                bloom_level=card.bloom_level,
                difficulty=card.difficulty,
                language_code=self.config.language_code,
            )
            for media_asset_id in payload.media_asset_ids:
                self.records.link_card_media(card_id, media_asset_id, role="primary")
            created.append(card_id)

        return GenerateCardsOutput(
            generated_count=len(generated),
            created_cards=created,
            strategy=payload.strategy,
            difficulty=payload.difficulty,
        )
