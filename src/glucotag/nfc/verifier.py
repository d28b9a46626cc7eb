"""
Repeated-read consistency verification.

A single pass over the tag can return a corrupted trend slot, so a value is
only surfaced once several passes agree. The unmasked 16-bit samples of
plausible readings are grouped into clusters (nearest representative within
a small tolerance) and the first cluster to reach the quorum wins. Passes are
never cancelled mid-read: each one receives the deadline and stops between
blocks. When the budget runs out the most populated cluster is still reported
for diagnostics, with glucose withheld.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, List, Optional

from .blocks import RawBlockSet
from .calibration import Calibration
from .config import VerificationConfig
from .decoder import DecodedReading, decode
from .errors import BlockReadFailure
from .reader import ReadPass

logger = logging.getLogger(__name__)

# Called with the monotonic deadline the pass must stop at.
ReadPassFn = Callable[[float], Awaitable[ReadPass]]


class VerificationState(str, enum.Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    CLUSTERING = "clustering"
    SUCCEEDED = "succeeded"
    FAILED_NO_QUORUM = "failedNoQuorum"
    FAILED_NO_DATA = "failedNoData"


class StopReason(str, enum.Enum):
    QUORUM = "quorum"
    TIMEOUT = "timeout"
    MAX_ATTEMPTS = "maxAttempts"


class VerificationOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    TIMEOUT = "verificationTimeout"
    NO_QUORUM = "verificationNoQuorum"
    NO_DATA = "noDataAcquired"


@dataclass
class CandidateCluster:
    representative: int
    first_reading: DecodedReading
    blocks: RawBlockSet
    first_duration: float
    first_attempt: int
    count: int = 1

    def matches(self, raw_value: int, tolerance: int) -> bool:
        return abs(self.representative - raw_value) <= tolerance


@dataclass
class VerificationResult:
    state: VerificationState
    stop_reason: StopReason
    reading: DecodedReading
    blocks: RawBlockSet
    attempts: int
    elapsed: float
    clusters: List[CandidateCluster] = field(default_factory=list)
    winning_cluster: Optional[CandidateCluster] = None

    @property
    def succeeded(self) -> bool:
        return self.state is VerificationState.SUCCEEDED

    @property
    def outcome(self) -> VerificationOutcome:
        if self.state is VerificationState.SUCCEEDED:
            return VerificationOutcome.SUCCEEDED
        if self.state is VerificationState.FAILED_NO_DATA:
            return VerificationOutcome.NO_DATA
        if self.stop_reason is StopReason.TIMEOUT:
            return VerificationOutcome.TIMEOUT
        return VerificationOutcome.NO_QUORUM

    @property
    def diagnostics(self) -> Dict[str, str]:
        return self.reading.diagnostics


def raw16_of(reading: DecodedReading) -> Optional[int]:
    """Unmasked 16-bit trend sample; only plausible readings take part in clustering."""
    value = reading.diagnostics.get("raw16")
    if value is None or reading.glucose is None:
        return None
    return int(value)


def find_cluster(clusters: List[CandidateCluster], raw_value: int, tolerance: int) -> Optional[CandidateCluster]:
    """Nearest cluster within tolerance; the earliest one wins ties."""
    best: Optional[CandidateCluster] = None
    for cluster in clusters:
        if not cluster.matches(raw_value, tolerance):
            continue
        if best is None or abs(cluster.representative - raw_value) < abs(best.representative - raw_value):
            best = cluster
    return best


def largest_cluster(clusters: List[CandidateCluster]) -> Optional[CandidateCluster]:
    best: Optional[CandidateCluster] = None
    for cluster in clusters:
        if best is None or cluster.count > best.count:
            best = cluster
    return best


class ConsistencyVerifier:
    def __init__(
        self,
        config: Optional[VerificationConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or VerificationConfig()
        self.config.validate()
        self._clock = clock
        self.state = VerificationState.IDLE

    async def run(self, read_pass: ReadPassFn, calibration: Optional[Calibration] = None) -> VerificationResult:
        cfg = self.config
        started = self._clock()
        attempts = 0
        clusters: List[CandidateCluster] = []
        winner: Optional[CandidateCluster] = None
        any_blocks = False
        stop_reason = StopReason.MAX_ATTEMPTS

        while True:
            elapsed = self._clock() - started
            if winner is not None:
                stop_reason = StopReason.QUORUM
                break
            if elapsed >= cfg.time_budget_sec:
                stop_reason = StopReason.TIMEOUT
                break
            if attempts >= cfg.max_attempts:
                stop_reason = StopReason.MAX_ATTEMPTS
                break
            attempts += 1
            self.state = VerificationState.ATTEMPTING
            attempt = await self._run_pass(read_pass, started + cfg.time_budget_sec)
            if attempt.blocks:
                any_blocks = True
            if attempt.error is not None:
                logger.debug("Attempt #%d failed early: %s", attempts, attempt.error)
                continue
            reading = decode(attempt.blocks, calibration)
            raw_value = raw16_of(reading)
            if raw_value is None:
                logger.debug(
                    "Attempt #%d no plausible reading (discardReason=%s)",
                    attempts,
                    reading.discard_reason or "none",
                )
                continue
            self.state = VerificationState.CLUSTERING
            cluster = find_cluster(clusters, raw_value, cfg.tolerance_raw)
            if cluster is None:
                clusters.append(
                    CandidateCluster(
                        representative=raw_value,
                        first_reading=reading,
                        blocks=attempt.blocks,
                        first_duration=attempt.duration,
                        first_attempt=attempts,
                    )
                )
                logger.debug("Attempt #%d raw=%d started new cluster", attempts, raw_value)
                if cfg.required_reads <= 1:
                    winner = clusters[-1]
                continue
            cluster.count += 1
            logger.debug(
                "Attempt #%d raw=%d -> cluster rep=%d count=%d",
                attempts,
                raw_value,
                cluster.representative,
                cluster.count,
            )
            if cluster.count >= cfg.required_reads:
                winner = cluster
                logger.debug(
                    "Consistency achieved (rep=%d count=%d) after %d attempts",
                    cluster.representative,
                    cluster.count,
                    attempts,
                )

        if winner is not None:
            chosen = winner
            reading = winner.first_reading
            blocks = winner.blocks
            final_duration = winner.first_duration
            final_attempt = winner.first_attempt
            state = VerificationState.SUCCEEDED
        else:
            chosen = largest_cluster(clusters)
            if chosen is not None:
                logger.debug(
                    "Largest cluster rep=%d count=%d (< required %d)",
                    chosen.representative,
                    chosen.count,
                    cfg.required_reads,
                )
                reading = chosen.first_reading
                blocks = chosen.blocks
                final_duration = chosen.first_duration
                final_attempt = chosen.first_attempt
            else:
                logger.debug("No clusters formed; performing fallback read")
                fallback = await self._run_pass(read_pass, self._clock() + cfg.time_budget_sec)
                if fallback.blocks:
                    any_blocks = True
                reading = decode(fallback.blocks, calibration)
                blocks = fallback.blocks
                final_duration = fallback.duration
                final_attempt = attempts + 1
            state = VerificationState.FAILED_NO_QUORUM if any_blocks else VerificationState.FAILED_NO_DATA

        elapsed = self._clock() - started
        self.state = state
        result = VerificationResult(
            state=state,
            stop_reason=stop_reason,
            reading=reading,
            blocks=blocks,
            attempts=attempts,
            elapsed=elapsed,
            clusters=clusters,
            winning_cluster=winner,
        )
        result.reading = self._finalize_reading(result, chosen, final_duration, final_attempt)
        if result.succeeded:
            logger.info(
                "Verified glucose %.0f mg/dL (attempts=%d cluster rep=%d)",
                result.reading.glucose,
                attempts,
                winner.representative,  # type: ignore[union-attr]
            )
        else:
            logger.info(
                "Verification failed (%s) after %d attempt(s) in %.2fs; glucose discarded",
                result.outcome.value,
                attempts,
                elapsed,
            )
        return result

    @staticmethod
    async def _run_pass(read_pass: ReadPassFn, deadline: float) -> ReadPass:
        try:
            return await read_pass(deadline)
        except BlockReadFailure as exc:
            return ReadPass(error=exc)

    def _finalize_reading(
        self,
        result: VerificationResult,
        chosen: Optional[CandidateCluster],
        final_duration: float,
        final_attempt: int,
    ) -> DecodedReading:
        cfg = self.config
        meta = dict(result.reading.diagnostics)
        meta["verificationAttempts"] = str(result.attempts)
        meta["verificationWindowSeconds"] = f"{cfg.time_budget_sec:.1f}"
        meta["verificationRequired"] = str(cfg.required_reads)
        meta["verificationClusterToleranceRaw16"] = str(cfg.tolerance_raw)
        meta["overallVerificationDuration"] = f"{result.elapsed:.2f}"
        meta["finalAttemptDuration"] = f"{final_duration:.2f}"
        meta["finalAttemptNumber"] = str(final_attempt)
        meta["verificationStopReason"] = result.stop_reason.value
        meta["verificationOutcome"] = result.outcome.value
        if result.clusters:
            meta["verificationClusters"] = ",".join(
                f"{cluster.representative}:{cluster.count}"
                for cluster in sorted(result.clusters, key=lambda item: item.representative)
            )
        glucose = result.reading.glucose
        if result.succeeded:
            meta["verificationSucceeded"] = "true"
            meta["verificationFinalRaw16ClusterRep"] = str(chosen.representative)  # type: ignore[union-attr]
            if glucose is not None:
                meta["glucoseMgdl"] = f"{glucose:.1f}"
        else:
            meta["verificationSucceeded"] = "false"
            if chosen is not None:
                meta["verificationBestClusterRep"] = str(chosen.representative)
                meta["verificationBestClusterCount"] = str(chosen.count)
            meta.setdefault("discardReason", "verificationInsufficientMatches")
            meta["glucoseDiscarded"] = "true"
            meta.pop("glucoseMgdl", None)
            glucose = None
        return replace(result.reading, glucose=glucose, diagnostics=meta)
