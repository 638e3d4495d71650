"""Prometheus metrics for the synchronisation core.

Labels stay low-cardinality: entity types, mutation kinds, job names and
outcomes only. Never label by key qualifiers, ids or tokens.
"""

from __future__ import annotations

from prometheus_client import Counter

# ----------------------------
# Cache metrics
# ----------------------------

CACHE_READS_TOTAL = Counter(
    "caseload_cache_reads_total",
    "Cache reads by outcome (hit, stale, miss, error).",
    labelnames=("outcome",),
)

CACHE_REFRESHES_TOTAL = Counter(
    "caseload_cache_refreshes_total",
    "Background refreshes by outcome (success, error, discarded).",
    labelnames=("outcome",),
)

CACHE_INVALIDATED_KEYS_TOTAL = Counter(
    "caseload_cache_invalidated_keys_total",
    "Keys marked stale after a committed mutation or cleanup, by entity type.",
    labelnames=("entity_type",),
)

# ----------------------------
# Mutation metrics
# ----------------------------

MUTATIONS_TOTAL = Counter(
    "caseload_mutations_total",
    "Settled mutations by entity type, kind and outcome.",
    labelnames=("entity_type", "kind", "outcome"),
)

MUTATION_ROLLBACKS_TOTAL = Counter(
    "caseload_mutation_rollbacks_total",
    "Optimistic patches rolled back after a failed remote call.",
    labelnames=("entity_type",),
)

# ----------------------------
# Scheduler / token metrics
# ----------------------------

JOB_RUNS_TOTAL = Counter(
    "caseload_job_runs_total",
    "Scheduled job runs by job name and outcome (success, failure, skipped).",
    labelnames=("job", "outcome"),
)

TOKEN_LOOKUPS_TOTAL = Counter(
    "caseload_token_lookups_total",
    "Token validation cache lookups by outcome (hit, miss, expired, error).",
    labelnames=("outcome",),
)


def record_cache_read(outcome: str) -> None:
    CACHE_READS_TOTAL.labels(outcome=outcome).inc()


def record_refresh(outcome: str) -> None:
    CACHE_REFRESHES_TOTAL.labels(outcome=outcome).inc()


def record_invalidation(entity_type: str, count: int) -> None:
    if count > 0:
        CACHE_INVALIDATED_KEYS_TOTAL.labels(entity_type=entity_type).inc(count)


def record_mutation(entity_type: str, kind: str, outcome: str) -> None:
    MUTATIONS_TOTAL.labels(entity_type=entity_type, kind=kind, outcome=outcome).inc()


def record_rollback(entity_type: str) -> None:
    MUTATION_ROLLBACKS_TOTAL.labels(entity_type=entity_type).inc()


def record_job_run(job: str, outcome: str) -> None:
    JOB_RUNS_TOTAL.labels(job=job, outcome=outcome).inc()


def record_token_lookup(outcome: str) -> None:
    TOKEN_LOOKUPS_TOTAL.labels(outcome=outcome).inc()


__all__ = [
    "CACHE_INVALIDATED_KEYS_TOTAL",
    "CACHE_READS_TOTAL",
    "CACHE_REFRESHES_TOTAL",
    "JOB_RUNS_TOTAL",
    "MUTATIONS_TOTAL",
    "MUTATION_ROLLBACKS_TOTAL",
    "TOKEN_LOOKUPS_TOTAL",
    "record_cache_read",
    "record_invalidation",
    "record_job_run",
    "record_mutation",
    "record_refresh",
    "record_rollback",
    "record_token_lookup",
]
