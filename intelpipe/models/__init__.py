from intelpipe.models.base import Base
from intelpipe.models.raw import RawItem
from intelpipe.models.processing import ProcessingRecord
from intelpipe.models.documents import IntelItem, ExtractedEntityRecord
from intelpipe.models.fingerprints import SeenFingerprint
from intelpipe.models.enrichment import EnrichmentCacheEntry
from intelpipe.models.alerts import NotificationRecord
from intelpipe.models.runs import PipelineRun
from intelpipe.models.source_state import SourceState

__all__ = [
    "Base",
    "RawItem",
    "ProcessingRecord",
    "IntelItem",
    "ExtractedEntityRecord",
    "SeenFingerprint",
    "EnrichmentCacheEntry",
    "NotificationRecord",
    "PipelineRun",
    "SourceState",
]
