"""
Background job queue and worker coordination.

This package provides:
- A relational job store whose only status primitive is a conditional update
- Claiming by competing workers with no external lock manager
- Retry policy, stale-job reaping and cooperative cancellation
- Worker liveness heartbeats
- Per-owner live job updates over Postgres LISTEN/NOTIFY
"""
