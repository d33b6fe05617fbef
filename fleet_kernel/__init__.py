"""
Fleet Kernel - maintenance cost deliberation and fulfillment workflow

A persisted workflow core for fleet maintenance requests with:
- Turn-taking cost negotiation between requester side and mechanic
- Append-only, hash-chained negotiation history
- Ordered one-time logistics milestones
- Invoice finalization as the sole path to completion
- Optimistic concurrency on every transition
"""

__version__ = "0.1.0"
