"""
API v1 endpoints.
"""

from . import analyze_tracks

__all__ = [
    'analyze_tracks',
]
