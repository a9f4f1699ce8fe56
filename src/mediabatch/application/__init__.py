"""Application layer package."""

from mediabatch.application.job_orchestrator import JobOrchestrator
from mediabatch.application.materializer import ResultMaterializer, download_asset
from mediabatch.application.batch_coordinator import BatchCoordinator

__all__ = ["JobOrchestrator", "ResultMaterializer", "BatchCoordinator", "download_asset"]
