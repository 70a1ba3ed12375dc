"""Ordered preview-source fallback."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from config.settings import DEFAULT_COUNTRY, PROVIDER_TIMEOUT_SECONDS
from engine.errors import ProviderUnavailable
from engine.identifiers import TrackIdentifiers
from previews.providers.base import PreviewCandidate, PreviewProvider

logger = logging.getLogger(__name__)

SOURCE_FAILED = "computed_failed"


@dataclass(frozen=True)
class PreviewResolution:
    url: str | None
    source: str
    candidates: list[PreviewCandidate] = field(default_factory=list)
    winner: PreviewCandidate | None = None

    @property
    def found(self) -> bool:
        return self.winner is not None


class PreviewResolver:
    """Try providers one at a time in priority order and stop at the first success.

    Every attempt is recorded, including failures and timeouts, so the caller can
    compare the detected identity of the winning excerpt against the request.
    Providers that return None (not applicable, e.g. no ISRC) leave no entry.
    """

    def __init__(
        self,
        providers: list[PreviewProvider],
        *,
        timeout_seconds: float = PROVIDER_TIMEOUT_SECONDS,
    ) -> None:
        self.providers = list(providers)
        self.timeout_seconds = timeout_seconds

    def restricted_to(self, names: tuple[str, ...]) -> PreviewResolver:
        return PreviewResolver(
            [provider for provider in self.providers if provider.name in names],
            timeout_seconds=self.timeout_seconds,
        )

    async def _attempt(
        self,
        provider: PreviewProvider,
        ids: TrackIdentifiers,
        country: str,
    ) -> PreviewCandidate | None:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(provider.lookup, ids, country=country),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return PreviewCandidate(provider=provider.name, success=False, error="timeout")
        except ProviderUnavailable as exc:
            return PreviewCandidate(provider=provider.name, success=False, error=exc.reason)
        except Exception as exc:
            logger.exception("[PREVIEW] provider=%s track_id=%s unexpected failure", provider.name, ids.track_id)
            return PreviewCandidate(provider=provider.name, success=False, error=str(exc) or type(exc).__name__)

    async def resolve(self, ids: TrackIdentifiers, *, country: str = DEFAULT_COUNTRY) -> PreviewResolution:
        candidates: list[PreviewCandidate] = []
        for provider in self.providers:
            candidate = await self._attempt(provider, ids, country)
            if candidate is None:
                continue
            candidates.append(candidate)
            if candidate.success and candidate.url:
                logger.info(
                    "[PREVIEW] track_id=%s source=%s attempts=%s",
                    ids.track_id,
                    candidate.provider,
                    len(candidates),
                )
                return PreviewResolution(
                    url=candidate.url,
                    source=candidate.provider,
                    candidates=candidates,
                    winner=candidate,
                )
        logger.info("[PREVIEW] track_id=%s source=%s attempts=%s", ids.track_id, SOURCE_FAILED, len(candidates))
        return PreviewResolution(url=None, source=SOURCE_FAILED, candidates=candidates)
