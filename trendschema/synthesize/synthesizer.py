"""Build validated, versioned artifacts from (trend, content) pairs."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable

from trendschema.config import get_cache_config, get_trend_config
from trendschema.models import Artifact, ContentDocument, Match, Trend, utcnow
from trendschema.synthesize import SCHEMA_BUILDERS
from trendschema.synthesize.fingerprint import content_fingerprint, trend_fingerprint
from trendschema.synthesize.rules import select_schema_type
from trendschema.synthesize.validate import validate_jsonld
from trendschema.urls import normalize_url

logger = logging.getLogger(__name__)


class Synthesizer:
    """Turn a match and its content document into an Artifact.

    Raises IncompleteDataError or ValidationError instead of ever returning
    partial markup.
    """

    def __init__(self, config: dict, clock: Callable[[], datetime] = utcnow):
        self.config = config
        self.clock = clock
        self.expiry_multiplier = get_trend_config(config)["expiry_multiplier"]
        self.default_ttl = timedelta(hours=get_cache_config(config)["default_ttl_hours"])

    def expires_at(self, trend: Trend | None, now: datetime) -> datetime:
        if trend is None:
            return now + self.default_ttl
        return trend.expires_at(self.expiry_multiplier)

    def synthesize(
        self,
        match: Match | None,
        document: ContentDocument,
        trend: Trend | None = None,
        previous: Artifact | None = None,
        base_version: int = 0,
    ) -> Artifact:
        now = self.clock()
        content_fp = content_fingerprint(document)
        trend_fp = trend_fingerprint(trend)
        expires_at = self.expires_at(trend, now)
        source_trend_id = trend.id if trend else None

        if (
            previous is not None
            and previous.content_fingerprint == content_fp
            and previous.trend_fingerprint == trend_fp
        ):
            logger.debug("Fingerprints unchanged for %s, keeping v%d", previous.key, previous.version)
            return replace(previous, expires_at=expires_at, source_trend_id=source_trend_id)

        schema_type = select_schema_type(trend.category if trend else None, document.page_type)
        payload = SCHEMA_BUILDERS[schema_type](document, trend)
        validate_jsonld(payload)

        version = max(previous.version if previous else 0, base_version) + 1
        artifact = Artifact(
            client_id=document.client_id,
            url=normalize_url(document.url),
            payload=payload,
            schema_type=schema_type,
            source_trend_id=source_trend_id,
            generated_at=now,
            content_fingerprint=content_fp,
            trend_fingerprint=trend_fp,
            version=version,
            expires_at=expires_at,
        )
        logger.info(
            "Synthesized %s v%d for %s (trend=%s, score=%s)",
            schema_type, version, artifact.key,
            trend.query if trend else "-",
            f"{match.score:.3f}" if match else "-",
        )
        return artifact
