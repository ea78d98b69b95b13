"""Trust store: cached, refreshable metadata for trusted entities.

Entities come from configured sources (metadata files or URLs) or are
registered directly. Cached entries expire after the configured TTL,
shortened by the document's own cacheDuration/validUntil. An expired or
missing entry is fetched synchronously; concurrent refreshes of one entity
share a single fetch.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import httpx
from cryptography import x509
from lxml import etree

from authflow.core.audit import AuditEvent, AuditEventType, get_audit_logger
from authflow.core.config import MetadataSource, TrustSettings
from authflow.core.crypto.certs import CertificateError, load_certificate
from authflow.core.crypto.service import CryptoService
from authflow.core.errors import (
    MessageError,
    MetadataError,
    MetadataUnavailableError,
    UnknownEntityError,
)
from authflow.core.logging import LoggingClient, get_protocol_logger
from authflow.core.saml.messages import parse_xml
from authflow.core.saml.metadata import Entity, find_entity_descriptor, parse_metadata

logger = logging.getLogger(__name__)

_NEVER = datetime.max.replace(tzinfo=UTC)


class MetadataFetcher:
    """Loads raw metadata documents from files or URLs."""

    def __init__(
        self,
        timeout: float = 10.0,
        verify_tls: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            timeout: HTTP timeout in seconds.
            verify_tls: Whether to verify TLS certificates.
            transport: Optional httpx transport (used by tests).
        """
        self._timeout = timeout
        self._verify_tls = verify_tls
        self._transport = transport

    def fetch(self, source: MetadataSource) -> bytes:
        """Fetch the metadata document for a source.

        Raises:
            MetadataUnavailableError: If the document cannot be read.
        """
        if source.path is not None:
            try:
                return source.path.read_bytes()
            except OSError as e:
                raise MetadataUnavailableError(source.entity_id, f"cannot read {source.path}: {e}") from e

        if not source.url:
            raise MetadataUnavailableError(source.entity_id, "source has neither path nor url")

        logger.debug(f"Fetching SAML metadata from {source.url}")
        protocol_logger = get_protocol_logger()
        try:
            with protocol_logger.flow(f"saml_metadata_{source.entity_id}", "saml_metadata_fetch"), LoggingClient(
                protocol_logger=protocol_logger,
                timeout=self._timeout,
                verify=self._verify_tls,
                transport=self._transport,
            ) as client:
                response = client.get(source.url)
                response.raise_for_status()
                return response.content
        except httpx.TimeoutException as e:
            raise MetadataUnavailableError(source.entity_id, f"timeout fetching {source.url}") from e
        except httpx.HTTPStatusError as e:
            raise MetadataUnavailableError(
                source.entity_id, f"HTTP {e.response.status_code} fetching {source.url}"
            ) from e
        except httpx.RequestError as e:
            raise MetadataUnavailableError(source.entity_id, f"request error: {e}") from e


@dataclass
class _CacheEntry:
    entity: Entity
    expires_at: datetime
    refreshable: bool


@dataclass
class _Inflight:
    event: threading.Event = field(default_factory=threading.Event)
    entity: Entity | None = None
    error: Exception | None = None


class TrustStore:
    """Process-wide cache of trusted entities.

    Lifecycle: ``init()`` loads configured sources, ``refresh()`` forces a
    reload of one entity and ``shutdown()`` drops everything. Readers get
    immutable ``Entity`` objects; a refresh swaps the cached object without
    affecting readers that already hold the previous one.
    """

    def __init__(
        self,
        sources: list[MetadataSource] | None = None,
        fetcher: MetadataFetcher | None = None,
        crypto: CryptoService | None = None,
        ttl_seconds: int = 3600,
        staleness_tolerance_seconds: int = 300,
        fetch_retries: int = 3,
        backoff_seconds: float = 0.5,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._sources = {s.entity_id: s for s in sources or []}
        self._fetcher = fetcher or MetadataFetcher()
        self._crypto = crypto or CryptoService()
        self._ttl = timedelta(seconds=ttl_seconds)
        self._staleness = timedelta(seconds=staleness_tolerance_seconds)
        self._retries = max(0, fetch_retries)
        self._backoff = backoff_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep

        self._lock = threading.Lock()
        self._cache: dict[str, _CacheEntry] = {}
        self._inflight: dict[str, _Inflight] = {}
        self._running = False

    @classmethod
    def from_settings(
        cls,
        settings: TrustSettings,
        crypto: CryptoService | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> TrustStore:
        """Create a trust store from configuration."""
        return cls(
            sources=settings.sources,
            fetcher=MetadataFetcher(
                timeout=settings.fetch_timeout_seconds,
                verify_tls=settings.verify_tls,
            ),
            crypto=crypto,
            ttl_seconds=settings.metadata_ttl_seconds,
            staleness_tolerance_seconds=settings.staleness_tolerance_seconds,
            fetch_retries=settings.fetch_retries,
            backoff_seconds=settings.backoff_seconds,
            clock=clock,
        )

    def init(self) -> None:
        """Start the store and load every configured source.

        Sources that fail to load are logged and retried on first use.
        """
        self._running = True
        for entity_id in list(self._sources):
            try:
                self.refresh(entity_id)
            except (MetadataUnavailableError, MetadataError) as e:
                logger.warning(f"Initial metadata load failed for {entity_id}: {e}")

    def shutdown(self) -> None:
        """Stop the store and drop all cached entities."""
        with self._lock:
            self._running = False
            self._cache.clear()
        logger.info("Trust store shut down")

    def add_source(self, source: MetadataSource) -> None:
        """Add a metadata source; it is loaded on first use."""
        with self._lock:
            self._sources[source.entity_id] = source

    def entities(self) -> list[Entity]:
        """Currently cached entities."""
        with self._lock:
            return [entry.entity for entry in self._cache.values()]

    def register(
        self,
        document: bytes | str,
        signing_certificate: x509.Certificate | None = None,
        entity_id: str | None = None,
    ) -> Entity:
        """Parse, verify and cache a metadata document.

        Directly registered entities never expire by TTL, only by the
        document's own validUntil.

        Args:
            document: Metadata XML.
            signing_certificate: When given, the document must carry a valid
                signature by this certificate.
            entity_id: Entity to pick from an aggregate document.

        Returns:
            The registered Entity.

        Raises:
            MetadataError: If the document is rejected.
        """
        entity = self._parse(document, signing_certificate, entity_id)
        self._store(entity, refreshable=entity.entity_id in self._sources)
        return entity

    def get_entity(self, entity_id: str) -> Entity:
        """Get a trusted entity, fetching its metadata if needed.

        Raises:
            MetadataUnavailableError: If the entity is unknown or its
                metadata cannot be obtained.
        """
        now = self._clock()
        with self._lock:
            if not self._running:
                raise MetadataUnavailableError(entity_id, "trust store is not running")
            entry = self._cache.get(entity_id)
            has_source = entity_id in self._sources

        if entry is not None and now < entry.expires_at:
            return entry.entity
        if not has_source:
            if entry is not None:
                return self._stale_or_raise(entity_id, entry, "metadata expired")
            raise UnknownEntityError(entity_id)
        return self.refresh(entity_id)

    def signing_certificates(self, entity_id: str) -> list[x509.Certificate]:
        """Every currently valid signing certificate of an entity."""
        return self.get_entity(entity_id).valid_signing_certificates(self._clock())

    def refresh(self, entity_id: str) -> Entity:
        """Reload an entity's metadata from its source.

        Concurrent callers for the same entity share one fetch. On failure
        the cached entity is served while within the staleness tolerance.

        Raises:
            MetadataUnavailableError: If the fetch failed and no usable
                cached copy exists.
        """
        with self._lock:
            source = self._sources.get(entity_id)
            if source is None:
                raise MetadataUnavailableError(entity_id, "no metadata source configured")
            inflight = self._inflight.get(entity_id)
            leader = inflight is None
            if leader:
                inflight = _Inflight()
                self._inflight[entity_id] = inflight

        if not leader:
            inflight.event.wait()
        else:
            try:
                inflight.entity = self._fetch(source)
            except (MetadataUnavailableError, MetadataError) as e:
                inflight.error = e
            finally:
                with self._lock:
                    self._inflight.pop(entity_id, None)
                inflight.event.set()

        if inflight.entity is not None:
            return inflight.entity

        with self._lock:
            entry = self._cache.get(entity_id)
        reason = str(inflight.error) if inflight.error else "fetch failed"
        if entry is None:
            raise MetadataUnavailableError(entity_id, reason)
        return self._stale_or_raise(entity_id, entry, reason)

    def _stale_or_raise(self, entity_id: str, entry: _CacheEntry, reason: str) -> Entity:
        if self._clock() < entry.expires_at + self._staleness:
            logger.warning(f"Serving stale metadata for {entity_id}: {reason}")
            return entry.entity
        raise MetadataUnavailableError(entity_id, reason)

    def _fetch(self, source: MetadataSource) -> Entity:
        audit = get_audit_logger()
        last_error: Exception | None = None
        for attempt in range(self._retries + 1):
            if attempt:
                self._sleep(self._backoff * (2 ** (attempt - 1)))
            try:
                document = self._fetcher.fetch(source)
                signing_cert = self._source_certificate(source)
                entity = self._parse(document, signing_cert, source.entity_id)
            except MetadataError as e:
                # A bad document will not improve by retrying
                audit.record(AuditEvent(
                    event_type=AuditEventType.METADATA_FAILED,
                    outcome="failure",
                    kind=e.kind,
                    entity_id=source.entity_id,
                    detail=str(e),
                ))
                raise
            except MetadataUnavailableError as e:
                last_error = e
                logger.warning(
                    f"Metadata fetch attempt {attempt + 1}/{self._retries + 1} "
                    f"for {source.entity_id} failed: {e.reason}"
                )
                continue

            self._store(entity, refreshable=True)
            audit.record(AuditEvent(
                event_type=AuditEventType.METADATA_REFRESHED,
                outcome="success",
                entity_id=entity.entity_id,
            ))
            return entity

        audit.record(AuditEvent(
            event_type=AuditEventType.METADATA_FAILED,
            outcome="failure",
            kind=MetadataUnavailableError.kind,
            entity_id=source.entity_id,
            detail=str(last_error),
        ))
        raise last_error or MetadataUnavailableError(source.entity_id, "fetch failed")

    def _source_certificate(self, source: MetadataSource) -> x509.Certificate | None:
        if source.signing_cert_path is None:
            return None
        try:
            return load_certificate(source.signing_cert_path)
        except CertificateError as e:
            raise MetadataError(f"Cannot load metadata signing certificate: {e}") from e

    def _parse(
        self,
        document: bytes | str,
        signing_certificate: x509.Certificate | None,
        entity_id: str | None,
    ) -> Entity:
        now = self._clock()
        if signing_certificate is None:
            entity = parse_metadata(document, entity_id=entity_id, now=now)
        else:
            try:
                root = parse_xml(document)
            except MessageError as e:
                raise MetadataError(f"Invalid metadata XML: {e}") from e
            candidates: list[etree._Element] = [root]
            descriptor = find_entity_descriptor(root, entity_id)
            if descriptor is not root:
                candidates.append(descriptor)
            for candidate in candidates:
                verified = self._crypto.verify_any(candidate, [signing_certificate])
                if verified is not None:
                    entity = parse_metadata(verified.signed_element, entity_id=entity_id, now=now)
                    break
            else:
                raise MetadataError("Metadata signature is missing or invalid")

        if entity_id is not None and entity.entity_id != entity_id:
            raise MetadataError(f"Metadata describes {entity.entity_id}, expected {entity_id}")
        return entity

    def _store(self, entity: Entity, refreshable: bool) -> None:
        if refreshable:
            expires_at = entity.expires_at(self._ttl)
        else:
            expires_at = entity.valid_until or _NEVER
        with self._lock:
            self._cache[entity.entity_id] = _CacheEntry(entity, expires_at, refreshable)
            self._running = True
        logger.info(f"Trusted entity loaded: {entity.entity_id} (expires {expires_at.isoformat()})")
