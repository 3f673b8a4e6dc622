"""
Matching Engine: cyclic multi-party matching of pooled intents.
"""
from .graph import AssetGraph, Leg, MatchSet, solve_cycle
from .engine import MatchingEngine

__all__ = ['AssetGraph', 'Leg', 'MatchSet', 'solve_cycle', 'MatchingEngine']
