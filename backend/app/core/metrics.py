############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# metrics.py: Prometheus metrics for the job orchestrator
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Prometheus metrics."""

from prometheus_client import Counter, Gauge

JOBS_ENQUEUED = Counter(
    "genrouter_jobs_enqueued_total",
    "Total number of generation jobs accepted",
)
JOBS_DISPATCHED = Counter(
    "genrouter_jobs_dispatched_total",
    "Jobs handed to a backend",
    ["backend"],
)
JOBS_FINISHED = Counter(
    "genrouter_jobs_finished_total",
    "Jobs that reached a terminal state",
    ["state"],  # completed, failed, cancelled
)
DISPATCH_FAILURES = Counter(
    "genrouter_dispatch_failures_total",
    "Dispatch attempts that left the job pending",
    ["reason"],  # no_backend, submit_error
)
MONITOR_TICKS = Counter(
    "genrouter_monitor_ticks_total",
    "Queue monitor iterations",
)
PENDING_JOBS = Gauge(
    "genrouter_pending_jobs",
    "Jobs waiting for a backend",
)
PROCESSING_JOBS = Gauge(
    "genrouter_processing_jobs",
    "Jobs running on a backend",
)
HEALTHY_BACKENDS = Gauge(
    "genrouter_healthy_backends",
    "Number of healthy backends",
)
