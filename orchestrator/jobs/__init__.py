"""
Durable job processing.

This package provides the job engine:
- Relational job store with an atomic claim and lease-guarded writes
- Registry-based pluggable handlers
- Job-level backoff, guarded external calls and a circuit breaker
- Per-owner admission, stuck-job recovery, quota compensation and chaining
"""
