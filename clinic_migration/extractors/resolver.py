"""Ingest strategy resolution."""

import logging
from typing import Optional, Union

from ..errors import ConfigurationError
from ..models.migration import IngestStrategyType

logger = logging.getLogger(__name__)


def resolve_strategy(
    override: Optional[Union[str, IngestStrategyType]],
    has_uploaded_files: bool,
    has_credentials: bool,
    entry_url: Optional[str] = None,
) -> IngestStrategyType:
    """
    Pick the ingest strategy for a run.

    Order: explicit override, then upload when files are present, then the
    provider API when credentials are present, then browser automation when
    an entry URL is present.

    Raises:
        ConfigurationError: If the override is unknown or no strategy applies
    """
    if override:
        try:
            strategy = IngestStrategyType(override)
        except ValueError:
            raise ConfigurationError(f"Unknown ingest strategy: {override}")
    elif has_uploaded_files:
        strategy = IngestStrategyType.UPLOAD
    elif has_credentials:
        strategy = IngestStrategyType.API
    elif entry_url:
        strategy = IngestStrategyType.BROWSER
    else:
        raise ConfigurationError(
            "No ingest strategy applies: provide uploaded files, credentials or an entry URL"
        )

    logger.info(f"Resolved ingest strategy: {strategy.value}")
    return strategy
