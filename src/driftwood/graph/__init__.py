"""Dependency graph of declarations."""

from driftwood.graph.builder import DependencyGraph, build_graph

__all__ = ["DependencyGraph", "build_graph"]
