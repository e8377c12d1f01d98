"""Ordered provider chains: try A, else B, else C, with one success predicate."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

from .errors import ChainExhausted

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Provider(Generic[T]):
    name: str
    run: Callable[[], T]
    available: bool = True


@dataclass(frozen=True)
class Attempt:
    provider: str
    ok: bool
    error: Optional[str] = None


@dataclass
class ChainOutcome(Generic[T]):
    provider: str
    value: T
    attempts: List[Attempt] = field(default_factory=list)


def file_nonempty(path: Path) -> bool:
    path = Path(path)
    return path.is_file() and path.stat().st_size > 0


def run_chain(
    label: str,
    providers: Sequence[Provider[T]],
    succeeded: Callable[[T], bool],
) -> ChainOutcome[T]:
    """Run providers in order and stop at the first whose value passes ``succeeded``.

    Providers marked unavailable are recorded as skipped without being called.
    Raises ChainExhausted carrying every attempt when none succeeds.
    """
    attempts: List[Attempt] = []
    for provider in providers:
        if not provider.available:
            attempts.append(Attempt(provider=provider.name, ok=False, error="unavailable"))
            continue
        try:
            value = provider.run()
        except Exception as exc:
            log.debug("%s: provider %s raised %s", label, provider.name, exc)
            attempts.append(Attempt(provider=provider.name, ok=False, error=str(exc) or type(exc).__name__))
            continue
        if succeeded(value):
            attempts.append(Attempt(provider=provider.name, ok=True))
            log.debug("%s: provider %s succeeded", label, provider.name)
            return ChainOutcome(provider=provider.name, value=value, attempts=attempts)
        attempts.append(Attempt(provider=provider.name, ok=False, error="no usable output"))
    summary = "; ".join(f"{attempt.provider}: {attempt.error}" for attempt in attempts) or "no providers"
    raise ChainExhausted(f"{label}: every provider failed ({summary})", attempts=attempts)
