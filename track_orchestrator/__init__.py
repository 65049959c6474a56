"""
Track Orchestrator - bounded, fault-tolerant parallel execution of track analysis jobs.
"""

from track_orchestrator.core.constants import VERSION

__version__ = VERSION
