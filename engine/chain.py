from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from schemas.models import CheckStatus, ProbeKind, ProbeOutcome
from logging_.engine_logger import get_engine_logger
from .cancel import CancelToken
from .probes import DEFAULT_PROBES, ProbeStrategy

log = get_engine_logger()


class ChainState(str, Enum):
    PROBING = "probing"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class ChainResult:
    state: ChainState
    status: CheckStatus
    probe_used: ProbeKind | None
    latency_ms: int | None
    details: tuple[ProbeOutcome, ...]


def classify_exhausted(details: Sequence[ProbeOutcome]) -> CheckStatus:
    """
    Verdict once every probe failed. A single definitive rejection outweighs
    any number of timeouts, so it is timeout only if all attempts timed out.
    """
    if details and all(d.status is CheckStatus.TIMEOUT for d in details):
        return CheckStatus.TIMEOUT
    return CheckStatus.FAIL


def first_latency(details: Sequence[ProbeOutcome]) -> int | None:
    for d in details:
        if d.latency_ms is not None:
            return d.latency_ms
    return None


def check_domain(
        domain: str,
        timeout_ms: int,
        token: CancelToken,
        probes: Sequence[ProbeStrategy] = DEFAULT_PROBES,
) -> ChainResult:
    """
    Runs the probes in order until one succeeds or all are exhausted.

    Cancellation is checked before each attempt and after it settles; a
    cancelled chain reports `pending` and the caller drops it.
    """
    details: list[ProbeOutcome] = []
    state = ChainState.PROBING
    winner: ProbeOutcome | None = None
    remaining = iter(probes)

    while state is ChainState.PROBING:
        if token.is_cancelled():
            state = ChainState.ABANDONED
            break
        probe = next(remaining, None)
        if probe is None:
            state = ChainState.EXHAUSTED
            break

        outcome = probe(domain, timeout_ms, token)
        details.append(outcome)

        if token.is_cancelled():
            state = ChainState.ABANDONED
        elif outcome.status is CheckStatus.OK:
            winner = outcome
            state = ChainState.SUCCEEDED

    if state is ChainState.ABANDONED:
        return ChainResult(state, CheckStatus.PENDING, None, None, tuple(details))

    if state is ChainState.SUCCEEDED:
        log.debug(f"{domain}: ok via {winner.kind.value} ({winner.latency_ms} ms)")
        return ChainResult(state, CheckStatus.OK, winner.kind, winner.latency_ms, tuple(details))

    status = classify_exhausted(details)
    log.debug(f"{domain}: {status.value} after {len(details)} probes")
    return ChainResult(state, status, None, first_latency(details), tuple(details))


def debug_check_domain(
        domain: str,
        timeout_ms: int = 8000,
        probes: Sequence[ProbeStrategy] = DEFAULT_PROBES,
) -> list[dict]:
    """Runs the chain without cancellation and reports every step with the URL it hit."""
    token = CancelToken()
    steps = []
    for probe in probes:
        outcome = probe(domain, timeout_ms, token)
        url = probe.url(domain) if hasattr(probe, "url") else domain
        method = getattr(probe, "method", None)
        if method:
            url = f"{url} ({method})"
        steps.append({
            "url": url,
            "probe": outcome.kind.value,
            "status": outcome.status.value,
            "latencyMs": outcome.latency_ms,
        })
        if outcome.status is CheckStatus.OK:
            break
    return steps
