"""
Persistent job queue for stateless, externally triggered workers.

This package provides:
- A relational job store with an atomic single-statement claim
- Time-budgeted worker invocations driven by HTTP triggers
- Continuation chains for work larger than one invocation
- Manual retry, cancellation, lease reclaim and retention cleanup
"""
