"""
Performance investigation engine.

Durable, resumable, phase-based benchmark investigations stored under
`<project>/<state-root>/perf/`.
"""

__version__ = "0.1.0"
