"""Content processor interface.

One method per job type. The worker owns status transitions; a processor
only does the work and raises on failure.
"""

from abc import ABC, abstractmethod

from ..queue.models import (
    GenerateCardsInput,
    GenerateCardsOutput,
    ImageIngestOutput,
    IngestFileInput,
    Job,
    PdfIngestOutput,
    VideoIngestOutput,
)


class ContentProcessor(ABC):
    @abstractmethod
    def ingest_image(self, job: Job, payload: IngestFileInput) -> ImageIngestOutput:
        pass

    @abstractmethod
    def ingest_video(self, job: Job, payload: IngestFileInput) -> VideoIngestOutput:
        pass

    @abstractmethod
    def ingest_pdf(self, job: Job, payload: IngestFileInput) -> PdfIngestOutput:
        pass

    @abstractmethod
    def generate_cards(self, job: Job, payload: GenerateCardsInput) -> GenerateCardsOutput:
        pass
