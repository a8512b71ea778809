"""
agentplan - Plan-driven agent orchestration.

This package keeps a markdown project plan, a small pool of agent worker
processes and an external issue tracker converged on one task model.
"""

__version__ = "0.1.0"
