"""
Analysis passes for building the Fact Index.

Pass 1: Inheritance - linearization, member resolution, storage layout
Pass 2: Per-function facts - state access, call ordering, call sites, guards
Pass 3: Whole-unit facts - call graph IR, transitive writes
"""

from analysis.fact_index import FactIndex, build_fact_index

__all__ = ["FactIndex", "build_fact_index"]
