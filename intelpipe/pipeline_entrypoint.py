"""Pipeline entrypoint - Standalone script for running one collection cycle.

Usage:
    python -m intelpipe.pipeline_entrypoint                 # Run all enabled sources
    python -m intelpipe.pipeline_entrypoint cisa-advisories # Run single source
"""

import asyncio
import sys
from typing import List

from intelpipe.core.config import settings
from intelpipe.core.errors import ConfigError
from intelpipe.core.loader import load_source_configs
from intelpipe.core.logging import get_logger
from intelpipe.schemas.config import SourceConfig
from intelpipe.schemas.pipeline import CycleSummary
from intelpipe.services.pipeline_service import PipelineService

logger = get_logger("pipeline_entrypoint")


async def run_cycle(configs: List[SourceConfig]) -> CycleSummary:
    """Run one pipeline cycle over ``configs``."""
    service = PipelineService()
    try:
        return await service.run_cycle(configs)
    finally:
        await service.aclose()


def main():
    """Main entry point for the pipeline."""
    logger.info("Pipeline starting...")

    try:
        configs = load_source_configs(settings.SOURCES_FILE)
    except ConfigError as exc:
        logger.error(f"Invalid source configuration: {exc}")
        sys.exit(1)

    if len(sys.argv) > 1:
        name = sys.argv[1]
        selected = [c for c in configs if c.name == name]
        if not selected:
            names = ", ".join(c.name for c in configs) or "none configured"
            logger.error(f"Invalid source: {name}. Must be one of: {names}")
            sys.exit(1)
        # Explicitly requested sources run even when disabled in the file
        configs = [c.model_copy(update={"enabled": True}) for c in selected]
    else:
        configs = [c for c in configs if c.enabled]

    summary = asyncio.run(run_cycle(configs))
    logger.info(f"Pipeline completed: {summary.model_dump(mode='json', exclude={'sources', 'quality'})}")

    # Exit with error code if any source failed
    if any(s.status == "error" for s in summary.sources.values()) or summary.status != "success":
        sys.exit(1)

    return summary


if __name__ == "__main__":
    main()
