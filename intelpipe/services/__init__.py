# Services package
from intelpipe.services.alerting import AlertEvaluator, LogSink, WebhookSink
from intelpipe.services.data_service import DataService
from intelpipe.services.enrichment import EnrichmentService, RdapDomainEnricher, RdapIpEnricher
from intelpipe.services.extraction import EntityExtractor
from intelpipe.services.pipeline_service import PipelineService
from intelpipe.services.quality import QualityGate
from intelpipe.services.state import ProcessingStateStore
from intelpipe.services.storage import IntelStore

__all__ = [
    "AlertEvaluator",
    "LogSink",
    "WebhookSink",
    "DataService",
    "EnrichmentService",
    "RdapDomainEnricher",
    "RdapIpEnricher",
    "EntityExtractor",
    "PipelineService",
    "QualityGate",
    "ProcessingStateStore",
    "IntelStore",
]
