"""
MetricDB Server - typed time-series metrics with durable local history.

This package lets a running process define named, typed metrics, record
updates to them, keep their history in append-only log files, and serve that
history to remote collectors under access control.

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │ Application │────▶│   Metric    │────▶│  MetricStorage  │──▶ listeners
    │    code     │     │  (handle)   │     │    (engine)     │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
    ┌─────────────┐     ┌─────────────┐              ▼
    │  Collector  │────▶│ HTTP / any  │     ┌─────────────────┐
    │  (remote)   │     │  transport  │     │ MetricLogWriter │
    └─────────────┘     └──────┬──────┘     │  (per metric)   │
                               │            └────────┬────────┘
                               ▼                     ▼
                        ┌─────────────┐     ┌─────────────────┐
                        │MetricService│     │  <group>/<id>/  │
                        │ hash + ACL  │     │ 00000001.log .. │
                        └─────────────┘     │ last            │
                                            └─────────────────┘

Invariants:
    - A value is appended only if strictly newer than and different from
      the current last value
    - The value type of a metric is fixed at first registration
    - Remote callers address metrics only by MetricIdHash
    - Access policy is consulted before any storage access

How to change safely:
    - On-disk framing is [2-byte length][timestamp][value]; never change the
      timestamp width of an existing codec
    - metrics.json is rewritten wholesale; keep its keys backward compatible
    - New remote operations must consult the access policy first

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
