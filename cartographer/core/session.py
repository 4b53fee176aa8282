"""
Discovery Session - Drives one target from captured exchanges to a versioned spec.

Flow:
    ingest (arrival order) -> analyze (concurrent per cluster)
    -> synthesize -> diff against the stored baseline -> persist
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import uuid4

from .config import Settings, settings as default_settings
from .errors import SessionAborted
from .models import (
    ApiSpecVersion,
    DiscoveryWarning,
    EndpointAnalysis,
    EndpointCluster,
    EndpointEntry,
    EndpointTemplate,
    Exchange,
    SpecChangelog,
    WarningKind,
)
from ..inference.anti_bot import AntiBotClassifier
from ..inference.auth import AuthClassifier, is_login_cluster
from ..inference.pagination import PaginationClassifier
from ..inference.schema_merger import SchemaInferencer
from ..inference.url_clustering import EndpointModelBuilder
from ..memory.spec_store import SpecStore
from ..spec.differ import FIRST_VERSION, SpecDiffer
from ..spec.openapi_builder import SpecSynthesizer


logger = logging.getLogger(__name__)


class DiscoverySession:
    """
    One discovery run against one target.

    The session exclusively owns its EndpointModelBuilder. Classifiers and the
    schema inferencer only ever see frozen cluster snapshots, so they run
    concurrently without locking.
    """

    def __init__(
        self,
        target: str,
        config: Settings | None = None,
        store: SpecStore | None = None,
        session_id: str | None = None
    ):
        """
        Initialize session.

        Args:
            target: Name of the system being discovered
            config: Settings override (uses global settings if not provided)
            store: Spec store holding baselines; nothing is persisted without one
            session_id: Explicit identifier (generated if not provided)
        """
        self.id = session_id or str(uuid4())
        self.target = target
        self.config = config or default_settings
        self.store = store
        self.created_at = datetime.now(timezone.utc)

        self.builder = EndpointModelBuilder(self.config)
        self.pagination = PaginationClassifier(self.config)
        self.auth = AuthClassifier()
        self.anti_bot = AntiBotClassifier(self.config)
        self.schemas = SchemaInferencer(self.config)
        self.synthesizer = SpecSynthesizer(title=self.config.spec_title)

        self.aborted = False
        self.analysis_warnings: list[DiscoveryWarning] = []
        self.last_spec: ApiSpecVersion | None = None
        self.last_changelog: SpecChangelog | None = None

    @property
    def warnings(self) -> list[DiscoveryWarning]:
        """Every warning recorded so far, in recording order."""
        return sorted(
            self.builder.warnings + self.analysis_warnings,
            key=lambda w: w.timestamp
        )

    def _check_aborted(self) -> None:
        if self.aborted:
            raise SessionAborted(f"session {self.id} for {self.target} was aborted")

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest(self, exchange: Exchange) -> EndpointTemplate | None:
        """
        Feed one exchange.

        Returns:
            The template it belongs to, or None if it was unclassified

        Raises:
            SessionAborted: If the session was aborted
        """
        self._check_aborted()
        return self.builder.add(exchange)

    def ingest_many(self, exchanges: Iterable[Exchange]) -> int:
        """
        Feed exchanges in order, checking for abort between each.

        Returns:
            Number of exchanges clustered
        """
        clustered = 0
        for exchange in exchanges:
            if self.ingest(exchange) is not None:
                clustered += 1
        return clustered

    def abort(self) -> None:
        """Stop the session and discard all template state."""
        if self.aborted:
            return
        self.aborted = True
        self.builder.reset()
        self.analysis_warnings.clear()
        logger.info("Session %s for %s aborted", self.id, self.target)

    def templates(self) -> list[EndpointTemplate]:
        """Current endpoint templates sorted by (path, method)."""
        return [cluster.template for cluster in self.builder.clusters()]

    # =========================================================================
    # Analysis
    # =========================================================================

    async def analyze(self) -> list[EndpointAnalysis]:
        """
        Run classifiers and schema inference over every cluster concurrently.

        Returns:
            One analysis per cluster, sorted by (path, method)
        """
        self._check_aborted()
        clusters = self.builder.clusters()
        login_clusters = [c for c in clusters if is_login_cluster(c)]

        analyses = await asyncio.gather(*(
            self._analyze_cluster(cluster, login_clusters) for cluster in clusters
        ))

        self.analysis_warnings = [w for analysis in analyses for w in analysis.warnings]
        return list(analyses)

    async def _analyze_cluster(
        self,
        cluster: EndpointCluster,
        login_clusters: list[EndpointCluster]
    ) -> EndpointAnalysis:
        pagination, auth, anti_bot, (response_schema, response_warnings), (request_schema, request_warnings) = (
            await asyncio.gather(
                asyncio.to_thread(self.pagination.classify, cluster),
                asyncio.to_thread(self.auth.classify, cluster, login_clusters),
                asyncio.to_thread(self.anti_bot.classify, cluster),
                asyncio.to_thread(self.schemas.infer_responses, cluster),
                asyncio.to_thread(self.schemas.infer_requests, cluster),
            )
        )

        warnings = list(response_warnings) + list(request_warnings)
        if pagination is not None and pagination.low_confidence:
            message = (
                f"pagination on {cluster.template.endpoint_key} guessed as "
                f"{pagination.kind.value} with confidence {pagination.confidence:.2f}"
            )
            logger.warning(message)
            warnings.append(DiscoveryWarning(
                kind=WarningKind.AMBIGUOUS_PATTERN,
                message=message,
                endpoint=cluster.template.endpoint_key,
            ))

        return EndpointAnalysis(
            cluster=cluster,
            pagination=pagination,
            auth=auth,
            anti_bot=anti_bot,
            response_schema=response_schema,
            request_schema=request_schema,
            warnings=warnings,
        )

    # =========================================================================
    # Synthesis
    # =========================================================================

    async def synthesize(
        self,
        baseline: ApiSpecVersion | None = None,
        persist: bool = True
    ) -> tuple[ApiSpecVersion, SpecChangelog]:
        """
        Build a spec version and diff it against the baseline.

        Args:
            baseline: Explicit baseline (defaults to the store's latest for the target)
            persist: Save the new version to the store when it differs from the baseline

        Returns:
            New spec version and its changelog

        Raises:
            SessionAborted: If the session was aborted
        """
        self._check_aborted()

        if baseline is None and self.store is not None:
            baseline = await self.store.latest(self.target)

        analyses = await self.analyze()
        self._check_aborted()

        entries = [
            EndpointEntry(
                template=analysis.cluster.template,
                pagination=analysis.pagination,
                auth=analysis.auth,
                anti_bot=analysis.anti_bot,
                response_schema=analysis.response_schema,
                request_schema=analysis.request_schema,
                status_codes=sorted({e.status_code for e in analysis.cluster.exchanges}),
            )
            for analysis in analyses
        ]

        notes = self._session_notes()
        created_at = datetime.now(timezone.utc)
        differ = SpecDiffer()

        # The version number depends on the diff, and the diff does not depend on the version
        candidate = self.synthesizer.synthesize(
            entries, self.target, baseline.version if baseline else FIRST_VERSION, created_at, notes
        )
        changelog = differ.diff(baseline, candidate)
        version = differ.next_version(baseline, changelog, candidate.fingerprint)

        spec = candidate
        if version != candidate.version:
            spec = self.synthesizer.synthesize(entries, self.target, version, created_at, notes)
            changelog = changelog.model_copy(update={"current_version": version})

        self.analysis_warnings.extend(differ.warnings)

        if persist and self.store is not None and (baseline is None or spec.version != baseline.version):
            await self.store.save(spec, changelog)

        logger.info(
            "Synthesized %s version %s: %d endpoints, %d warnings",
            self.target, spec.version, len(spec.entries), len(self.warnings),
        )

        self.last_spec = spec
        self.last_changelog = changelog
        return spec, changelog

    async def run(self, exchanges: Iterable[Exchange]) -> tuple[ApiSpecVersion, SpecChangelog]:
        """Ingest a batch of exchanges and synthesize."""
        self.ingest_many(exchanges)
        return await self.synthesize()

    def _session_notes(self) -> dict[str, Any]:
        stats = self.builder.get_statistics()
        return {
            "unclassifiedExchanges": stats["unclassified"],
        }

    def get_summary(self) -> dict[str, Any]:
        """
        Get a summary of the session state.

        Returns:
            Summary dictionary
        """
        stats = self.builder.get_statistics()
        return {
            "id": self.id,
            "target": self.target,
            "created_at": self.created_at.isoformat(),
            "aborted": self.aborted,
            "templates": stats["total_templates"],
            "exchanges": stats["total_exchanges"],
            "unclassified": stats["unclassified"],
            "warnings": len(self.warnings),
            "last_version": self.last_spec.version if self.last_spec else None,
        }
